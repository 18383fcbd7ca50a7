"""
Main Entry Point for the letmatch CLI.

This module handles argument parsing and dispatches to specific command
handlers defined in `letmatch.cli.commands`.
"""

import argparse
import sys
from pathlib import Path
from typing import List, Optional

from letmatch import __version__
from letmatch.cli import commands


def main(argv: Optional[List[str]] = None) -> int:
  """
  Main CLI entry point.

  Args:
      argv: Optional list of command line arguments (defaults to sys.argv).

  Returns:
      int: Exit code (0 for success, non-zero for failure).
  """
  parser = argparse.ArgumentParser(description="letmatch: extended pattern-matching blocks for Python")
  parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

  subparsers = parser.add_subparsers(dest="command", required=True)

  # --- Command: EXPAND ---
  cmd_exp = subparsers.add_parser("expand", help="Expand extended blocks in a file or directory")
  cmd_exp.add_argument("path", type=Path, help="Input source file or directory")
  cmd_exp.add_argument("--out", type=Path, help="Output destination (file or dir)")
  cmd_exp.add_argument(
    "--no-check",
    action="store_true",
    help="Skip the mypy exhaustiveness check of the expanded code",
  )
  cmd_exp.add_argument("--json-trace", type=Path, default=None, help="Dump the execution trace to a JSON file.")
  cmd_exp.add_argument("--keyword", default=None, help="Block keyword (default: from toml, else 'do')")

  # --- Command: CHECK ---
  cmd_chk = subparsers.add_parser("check", help="Expand in memory and report diagnostics")
  cmd_chk.add_argument("path", type=Path, help="Input source file or directory")
  cmd_chk.add_argument("--keyword", default=None, help="Block keyword (default: from toml, else 'do')")

  args = parser.parse_args(argv)

  if args.command == "expand":
    return commands.handle_expand(args.path, args.out, not args.no_check, args.json_trace, args.keyword)

  elif args.command == "check":
    return commands.handle_check(args.path, args.keyword)

  return 0


if __name__ == "__main__":
  sys.exit(main())
