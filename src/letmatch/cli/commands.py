"""
CLI Command Handlers Facade.

Re-exports handlers from `letmatch.cli.handlers` so the entry point and the
tests have a single patch target.
"""

from letmatch.cli.handlers.expand import (
  handle_expand,
  _expand_single_file,
  _print_batch_summary,
)
from letmatch.cli.handlers.check import handle_check

__all__ = [
  "handle_check",
  "handle_expand",
]
