"""
Entry point for module execution (``python -m letmatch``).

This module delegates execution to the CLI handler in ``letmatch.cli.__main__``.
"""

import sys
from letmatch.cli.__main__ import main

if __name__ == "__main__":
  sys.exit(main())
