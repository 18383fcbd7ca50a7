from .expand import handle_expand, _expand_single_file, _print_batch_summary
from .check import handle_check

__all__ = [
  "handle_check",
  "handle_expand",
]
