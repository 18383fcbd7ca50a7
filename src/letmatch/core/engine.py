"""
Expansion Engine.

Orchestrates the expansion of a Python module containing extended blocks:

1.  **Tokenize**: Lex the module and reserve every identifier it uses, so
    generated names never shadow user names.
2.  **Locate**: Find and parse each top-level `do { ... }` invocation.
3.  **Lower**: Lower each site and render it at the site's indentation.
    A failing site is left verbatim and diagnosed; the others still expand.
4.  **Import**: Bind the `assert_never` alias used by exhaustiveness guards.
5.  **Check**: Hand the result to the host compiler and type checker.
"""

from typing import List, Optional

import libcst as cst

from letmatch.config import RuntimeConfig
from letmatch.core.diagnostics import Diagnostic, LetMatchError
from letmatch.core.exhaustiveness import HostChecker
from letmatch.core.expansion_result import ExpansionResult
from letmatch.core.lowering import LoweringEngine
from letmatch.core.naming import FreshNameAllocator
from letmatch.core.parser import Tokenizer, locate_sites
from letmatch.core.tokens import TokenKind
from letmatch.core.tracer import get_tracer, reset_tracer
from letmatch.enums import DiagnosticKind
from letmatch.utils.rendering import render_statements


class ExpansionEngine:
  """
  Main entry point for expanding a module.

  Attributes:
      config: Runtime settings.
      allocator: Hidden-name source. A new one is created per run unless injected.
  """

  def __init__(
    self,
    config: Optional[RuntimeConfig] = None,
    allocator: Optional[FreshNameAllocator] = None,
    checker: Optional[HostChecker] = None,
  ) -> None:
    self.config = config or RuntimeConfig()
    self.allocator = allocator
    self.checker = checker or HostChecker(self.config)

  def run(self, code: str, filename: str = "<string>") -> ExpansionResult:
    """
    Expands every extended block of `code`.

    Args:
        code: Module source.
        filename: Name used in diagnostics.

    Returns:
        ExpansionResult: Expanded code plus diagnostics and trace.
    """
    reset_tracer()
    tracer = get_tracer()
    tracer.start_phase("Expansion Pipeline", filename)

    tracer.start_phase("Tokenize", "Lexing module")
    try:
      tokens = list(Tokenizer(code).tokenize())
    except LetMatchError as e:
      tracer.end_phase()
      tracer.end_phase()
      return ExpansionResult(
        code=code,
        diagnostics=[e.to_diagnostic(filename)],
        success=False,
        trace_events=tracer.export(),
      )
    allocator = self.allocator or FreshNameAllocator(prefix=self.config.hidden_prefix)
    allocator.reserve(t.text for t in tokens if t.kind == TokenKind.NAME)
    tracer.end_phase()

    tracer.start_phase("Locate", "Parsing invocation sites")
    sites = locate_sites(code, self.config.block_keyword, tokens)
    tracer.end_phase()

    diagnostics: List[Diagnostic] = []
    lowering = LoweringEngine(
      allocator=allocator,
      emit_guard=self.config.emit_exhaustiveness_guard,
      tracer=tracer,
    )

    tracer.start_phase("Lower", f"{len(sites)} site(s)")
    pieces: List[str] = []
    verbatim = 0
    cursor = 0
    for site in sites:
      pieces.append(code[cursor : site.start])
      replacement = code[site.start : site.end]
      if site.error is not None:
        verbatim += 1
        diagnostics.append(site.error.to_diagnostic(filename))
        tracer.log_warning(f"Site at {site.span} left verbatim: {site.error.message}")
      else:
        try:
          lowered = lowering.lower_site(site.block, site.sink)
          rendered = render_statements(lowered.to_statements(), site.indent, self.config.indent)
          replacement = rendered.rstrip("\n")
        except LetMatchError as e:
          verbatim += 1
          diagnostics.append(e.to_diagnostic(filename))
          tracer.log_warning(f"Site at {site.span} left verbatim: {e.message}")
      pieces.append(replacement)
      cursor = site.end
    pieces.append(code[cursor:])
    expanded = "".join(pieces)
    tracer.end_phase()

    # A site left verbatim still holds its block, so the module is not valid
    # Python and cannot take the import.
    if lowering.obligations and not verbatim:
      expanded, error = self._insert_guard_import(expanded, lowering.guard_callee, filename)
      if error is not None:
        diagnostics.append(error)

    if not diagnostics:
      tracer.start_phase("Host Check", "compile() and mypy")
      callee = lowering.guard_callee if lowering.uses_guard else None
      diagnostics.extend(self.checker.check(expanded, lowering.obligations, callee, filename))
      tracer.end_phase()

    tracer.end_phase()
    return ExpansionResult(
      code=expanded,
      diagnostics=diagnostics,
      success=not diagnostics,
      trace_events=tracer.export(),
      sites=len(sites),
      wrappers=len(lowering.wrappers),
    )

  @staticmethod
  def _insert_guard_import(code: str, alias: str, filename: str):
    """
    Adds `from typing import assert_never as <alias>` after the module
    docstring and any `__future__` imports.
    """
    try:
      module = cst.parse_module(code)
    except cst.ParserSyntaxError as e:
      return code, Diagnostic(
        kind=DiagnosticKind.HOST,
        message=e.message,
        line=e.raw_line,
        column=e.raw_column + 1,
        code="syntax",
        filename=filename,
      )

    index = 0
    body = list(module.body)
    if body and _is_docstring(body[0]):
      index = 1
    while index < len(body) and _is_future_import(body[index]):
      index += 1

    stmt = cst.parse_statement(f"from typing import assert_never as {alias}\n")
    body.insert(index, stmt)
    return module.with_changes(body=body).code, None


def _is_docstring(stmt: cst.CSTNode) -> bool:
  if not isinstance(stmt, cst.SimpleStatementLine) or len(stmt.body) != 1:
    return False
  small = stmt.body[0]
  return isinstance(small, cst.Expr) and isinstance(small.value, (cst.SimpleString, cst.ConcatenatedString))


def _is_future_import(stmt: cst.CSTNode) -> bool:
  if not isinstance(stmt, cst.SimpleStatementLine):
    return False
  return any(
    isinstance(small, cst.ImportFrom) and isinstance(small.module, cst.Name) and small.module.value == "__future__"
    for small in stmt.body
  )
