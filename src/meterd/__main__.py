"""Allow `python -m meterd` to launch the scheduler daemon."""

import sys

from meterd.main import main

sys.exit(main())
