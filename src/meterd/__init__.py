"""meterd — network-aware download admission scheduling."""

__version__ = "0.1.0"
