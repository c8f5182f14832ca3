"""
Entry point for running via `python -m opencode_runner`.

Also used to launch the detached watchdog process.
"""

import sys

from .cli import main

if __name__ == "__main__":
    sys.exit(main())
