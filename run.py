"""Run the opencode runner."""

import sys

from opencode_runner.cli import main

if __name__ == "__main__":
    sys.exit(main())
