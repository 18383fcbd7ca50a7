"""
Expand Command Handler.

Implements `letmatch expand`:
1. Configuration loading (TOML + CLI overrides).
2. Expansion of a file, or of every `*.py` file below a directory.
3. Output writing, trace dumping and a batch summary.
"""

import json
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import ValidationError
from rich.markup import escape
from rich.table import Table

from letmatch.config import RuntimeConfig
from letmatch.core.engine import ExpansionEngine
from letmatch.core.expansion_result import ExpansionResult
from letmatch.utils.console import console, log_error, log_info, log_success, log_warning


def handle_expand(
  input_path: Path,
  output_path: Optional[Path],
  check: bool = True,
  json_trace_path: Optional[Path] = None,
  keyword: Optional[str] = None,
) -> int:
  """
  Handles the 'expand' command execution.

  Args:
      input_path: Source file or directory.
      output_path: Destination file or directory. Files print to stdout when omitted.
      check: If False, mypy is not run on the expanded code.
      json_trace_path: Optional path to dump execution trace JSON.
      keyword: Override for the block keyword.

  Returns:
      int: Exit code (0 for success, 1 if any diagnostic was reported).
  """
  if not input_path.exists():
    log_error(f"Input not found: {input_path}")
    return 1

  config = load_config(
    input_path,
    block_keyword=keyword,
    check_exhaustiveness=None if check else False,
  )
  if config is None:
    return 1
  batch_results: Dict[str, ExpansionResult] = {}

  if input_path.is_file():
    result = _expand_single_file(input_path, output_path, config, json_trace_path)
    return 0 if result.success else 1

  if not output_path:
    log_error("Directory expansion requires --out destination directory.")
    return 1

  py_files = sorted(input_path.rglob("*.py"))
  if not py_files:
    log_warning(f"No .py files found in {input_path}")
    return 0

  log_info(f"Processing {len(py_files)} files from {input_path}...")
  for src_file in py_files:
    rel_path = src_file.relative_to(input_path)
    batch_trace = (output_path / rel_path).with_suffix(".trace.json") if json_trace_path else None
    batch_results[str(rel_path)] = _expand_single_file(src_file, output_path / rel_path, config, batch_trace)

  _print_batch_summary(batch_results)
  return 0 if all(r.success for r in batch_results.values()) else 1


def _expand_single_file(
  input_path: Path,
  output_path: Optional[Path],
  config: RuntimeConfig,
  json_trace_path: Optional[Path] = None,
) -> ExpansionResult:
  """
  Expands one file and writes the result.

  Args:
      input_path: Source file path.
      output_path: Destination file path, or None for stdout.
      config: Runtime configuration object.
      json_trace_path: Path to save trace event logs.

  Returns:
      ExpansionResult: Result object containing status and code.
  """
  try:
    code = input_path.read_text(encoding="utf-8")
  except OSError as e:
    log_error(escape(f"Failed to read {input_path}: {e}"))
    return ExpansionResult(success=False)

  result = ExpansionEngine(config=config).run(code, filename=str(input_path))

  if json_trace_path and result.trace_events:
    try:
      json_trace_path.parent.mkdir(parents=True, exist_ok=True)
      json_trace_path.write_text(json.dumps(result.trace_events, indent=2), encoding="utf-8")
      log_info(f"Trace saved to [path]{json_trace_path}[/path]")
    except OSError as e:
      log_error(escape(f"Failed to write trace: {e}"))

  if not result.success:
    report_diagnostics(result)
    return result

  if output_path:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(result.code, encoding="utf-8")
    log_success(f"Expanded: [path]{input_path}[/path] -> [path]{output_path}[/path]")
  else:
    print(result.code, end="")

  return result


def load_config(input_path: Path, **overrides) -> Optional[RuntimeConfig]:
  """
  Resolves the configuration for `input_path`, logging an invalid
  `[tool.letmatch]` table instead of raising.
  """
  try:
    return RuntimeConfig.load(
      search_path=input_path if input_path.is_dir() else input_path.parent,
      **overrides,
    )
  except ValidationError as e:
    log_error(escape(f"Invalid [tool.letmatch] configuration: {e}"))
    return None


def report_diagnostics(result: ExpansionResult) -> None:
  for line in result.errors:
    log_error(escape(line))


def _print_batch_summary(results: Dict[str, ExpansionResult]) -> None:
  """
  Renders a summary table of expansion results to the console.

  Args:
      results: Dictionary mapping filenames to expansion results.
  """
  total = len(results)
  failures: List[str] = [name for name, r in results.items() if not r.success]

  if not failures:
    log_success(f"Batch Complete: {total}/{total} files expanded.")
    return

  table = Table(title="Expansion Report")
  table.add_column("File", style="cyan")
  table.add_column("Sites", justify="right")
  table.add_column("Issues", style="red")

  for filename in failures:
    res = results[filename]
    issues = escape("; ".join(res.errors)) if res.errors else "Unknown Error"
    table.add_row(filename, str(res.sites), issues)

  console.print(table)
  console.print(f"\n[bold]Summary:[/bold] {total - len(failures)} Passed, {len(failures)} with Issues.")
