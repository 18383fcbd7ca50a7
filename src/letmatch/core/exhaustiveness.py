"""
Host Checking.

The expansion engine performs no pattern analysis of its own. Instead the
expanded module is handed to the host toolchain:

1.  `compile()` rejects what the Python compiler rejects, e.g. a case made
    unreachable by an irrefutable pattern in front of it.
2.  mypy verifies each `assert_never(<unmatched>)` catch-all emitted by the
    lowering engine. If the primary and fallback patterns do not cover the
    source type, mypy flags the call and the error is reported at the
    extended-let that produced it.
"""

import os
import re
from typing import Dict, List, Optional, Sequence

from mypy import api as mypy_api

from letmatch.config import RuntimeConfig
from letmatch.core.diagnostics import Diagnostic, ExhaustivenessError
from letmatch.core.lowering import ExhaustivenessObligation
from letmatch.enums import DiagnosticKind
from letmatch.utils.console import log_warning

MYPY_FLAGS = [
  "--check-untyped-defs",
  "--ignore-missing-imports",
  "--no-incremental",
  f"--cache-dir={os.devnull}",
  "--no-error-summary",
  "--no-pretty",
]

_MYPY_LINE = re.compile(r"^(?P<file>.+?):(?P<line>\d+):(?:\d+:)? (?P<severity>error|note): (?P<message>.*)$")


class HostChecker:
  """
  Runs the host compiler and type checker over expanded code.
  """

  def __init__(self, config: Optional[RuntimeConfig] = None) -> None:
    self.config = config or RuntimeConfig()

  def check(
    self,
    code: str,
    obligations: Sequence[ExhaustivenessObligation] = (),
    callee: Optional[str] = None,
    filename: str = "<string>",
  ) -> List[Diagnostic]:
    """
    Checks expanded code.

    Args:
        code: The expanded module.
        obligations: Catch-all cases emitted during lowering.
        callee: Local name of `typing.assert_never` in `code`.
        filename: Name used in diagnostics.

    Returns:
        List[Diagnostic]: Host syntax errors, else exhaustiveness failures.
    """
    try:
      compile(code, filename, "exec", dont_inherit=True)
    except SyntaxError as e:
      return [
        Diagnostic(
          kind=DiagnosticKind.HOST,
          message=e.msg,
          line=e.lineno or 0,
          column=e.offset or 0,
          code="syntax",
          filename=filename,
        )
      ]

    if not obligations or callee is None or not self.config.check_exhaustiveness:
      return []
    return self.check_exhaustiveness(code, obligations, callee, filename)

  def check_exhaustiveness(
    self,
    code: str,
    obligations: Sequence[ExhaustivenessObligation],
    callee: str,
    filename: str = "<string>",
  ) -> List[Diagnostic]:
    """
    Runs mypy and maps errors on catch-all lines back to extended-lets.
    """
    by_line = self._obligation_lines(code, obligations, callee)
    if not by_line:
      log_warning("No exhaustiveness guard found in expanded code; skipping mypy.")
      return []

    stdout, stderr, status = mypy_api.run([*MYPY_FLAGS, *self.config.checker_args, "-c", code])
    if status == 2:
      # Usage or internal error, not a verdict about the code.
      log_warning(f"mypy could not run: {stderr.strip() or stdout.strip()}")
      return []

    diagnostics: List[Diagnostic] = []
    for raw in stdout.splitlines():
      mo = _MYPY_LINE.match(raw)
      if not mo or mo.group("severity") != "error":
        continue
      obligation = by_line.get(int(mo.group("line")))
      if obligation is None:
        continue
      error = ExhaustivenessError(
        f"Patterns do not cover every value of the source ({mo.group('message')})",
        obligation.span,
      )
      diagnostics.append(error.to_diagnostic(filename))
    return diagnostics

  @staticmethod
  def _obligation_lines(
    code: str,
    obligations: Sequence[ExhaustivenessObligation],
    callee: str,
  ) -> Dict[int, ExhaustivenessObligation]:
    wanted = {f"{callee}({o.subject})": o for o in obligations}
    found: Dict[int, ExhaustivenessObligation] = {}
    for lineno, line in enumerate(code.splitlines(), start=1):
      stripped = line.strip()
      if stripped in wanted:
        found[lineno] = wanted[stripped]
    return found
