"""
Check Command Handler.

Implements `letmatch check`: expands in memory and reports diagnostics
without writing anything.
"""

from pathlib import Path
from typing import List, Optional

from rich.markup import escape

from letmatch.core.engine import ExpansionEngine
from letmatch.cli.handlers.expand import load_config, report_diagnostics
from letmatch.utils.console import log_error, log_success, log_warning


def handle_check(input_path: Path, keyword: Optional[str] = None) -> int:
  """
  Handles the 'check' command execution.

  Args:
      input_path: Source file or directory.
      keyword: Override for the block keyword.

  Returns:
      int: 0 if every file expands cleanly, 1 otherwise.
  """
  if not input_path.exists():
    log_error(f"Input not found: {input_path}")
    return 1

  config = load_config(input_path, block_keyword=keyword)
  if config is None:
    return 1

  files: List[Path] = sorted(input_path.rglob("*.py")) if input_path.is_dir() else [input_path]
  if not files:
    log_warning(f"No .py files found in {input_path}")
    return 0

  failed = 0
  sites = 0
  for path in files:
    try:
      code = path.read_text(encoding="utf-8")
    except OSError as e:
      log_error(escape(f"Failed to read {path}: {e}"))
      failed += 1
      continue
    result = ExpansionEngine(config=config).run(code, filename=str(path))
    sites += result.sites
    if not result.success:
      failed += 1
      report_diagnostics(result)

  if failed:
    log_error(f"{failed} of {len(files)} file(s) have problems.")
    return 1

  log_success(f"Checked {len(files)} file(s), {sites} extended block(s).")
  return 0
