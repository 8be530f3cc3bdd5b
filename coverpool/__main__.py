"""COVERPOOL CLI entry point — python -m coverpool"""

from __future__ import annotations

import sys

from coverpool.cli import main

if __name__ == "__main__":
    sys.exit(main())
