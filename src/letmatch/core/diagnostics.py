"""
Diagnostics for Extended Block Expansion.

This module provides:
1.  The exception hierarchy raised by the parser and the lowering engine.
    Each error carries the `Span` of the offending construct.
2.  The `Diagnostic` model, the serializable form of an error reported to
    the user (CLI output, `ExpansionResult.diagnostics`).
3.  The structural divergence test used to enforce that fallback arms never
    produce a value.

Exhaustiveness is not analysed here. It is delegated to the host checker
(see `letmatch.core.exhaustiveness`).
"""

from typing import Optional

import libcst as cst
from pydantic import BaseModel, Field

from letmatch.core.grammar import (
  Block,
  EscapeExpr,
  IfCompound,
  NestedBlock,
  Ordinary,
  Span,
  Statement,
  escape_always_fires,
  statement_value,
)
from letmatch.enums import DiagnosticKind, ParseErrorKind, SinkKind


class Diagnostic(BaseModel):
  """
  A user-facing report of a single problem.
  """

  kind: DiagnosticKind = Field(..., description="Category of the problem.")
  message: str = Field(..., description="Human readable explanation.")
  line: int = Field(0, description="1-based line of the offending construct.")
  column: int = Field(0, description="1-based column of the offending construct.")
  code: Optional[str] = Field(None, description="Finer grained error code (e.g. parse error kind).")
  filename: str = Field("<string>", description="Source the diagnostic refers to.")

  def render(self) -> str:
    """
    Formats the diagnostic in the conventional `file:line:col: kind: message` layout.

    Returns:
        str: The formatted line.
    """
    tag = f"{self.kind.value}[{self.code}]" if self.code else self.kind.value
    return f"{self.filename}:{self.line}:{self.column}: {tag}: {self.message}"


class LetMatchError(Exception):
  """
  Base class for expansion failures tied to a source location.
  """

  kind = DiagnosticKind.PARSE

  def __init__(self, message: str, span: Optional[Span] = None) -> None:
    super().__init__(message)
    self.message = message
    self.span = span

  @property
  def code(self) -> Optional[str]:
    return None

  def __str__(self) -> str:
    if self.span is None:
      return self.message
    return f"{self.span}: {self.message}"

  def to_diagnostic(self, filename: str = "<string>") -> Diagnostic:
    """
    Converts the exception into a serializable `Diagnostic`.

    Args:
        filename: Name of the file being expanded.

    Returns:
        Diagnostic: The report.
    """
    line = self.span.line if self.span else 0
    column = self.span.column + 1 if self.span else 0
    return Diagnostic(
      kind=self.kind,
      message=self.message,
      line=line,
      column=column,
      code=self.code,
      filename=filename,
    )


class ParseError(LetMatchError):
  """Malformed extended-let, arm list, escape or block syntax."""

  kind = DiagnosticKind.PARSE

  def __init__(self, error_kind: ParseErrorKind, message: str, span: Optional[Span] = None) -> None:
    super().__init__(message, span)
    self.error_kind = error_kind

  @property
  def code(self) -> Optional[str]:
    return self.error_kind.value


class DivergenceError(LetMatchError):
  """A fallback arm whose body can fall through with a value."""

  kind = DiagnosticKind.DIVERGENCE


class LoweringError(LetMatchError):
  """A construct the lowering engine cannot express faithfully."""

  kind = DiagnosticKind.LOWERING


class ExhaustivenessError(LetMatchError):
  """Host checker verdict: primary and fallback patterns do not cover the source."""

  kind = DiagnosticKind.EXHAUSTIVENESS


_DIVERGING_SMALL = (cst.Return, cst.Raise, cst.Break, cst.Continue)


def statement_diverges(stmt: Statement) -> bool:
  """
  Structural test: does executing `stmt` always transfer control away?

  Only syntactic forms are recognised. Calls to functions annotated as
  `NoReturn` are not inferred to diverge.

  Args:
      stmt: A statement or tail element.

  Returns:
      bool: True if control never continues past `stmt`.
  """
  if isinstance(stmt, EscapeExpr):
    return True
  if isinstance(stmt, Ordinary):
    if escape_always_fires(statement_value(stmt.node)):
      return True
    return any(isinstance(small, _DIVERGING_SMALL) for small in stmt.node.body)
  if isinstance(stmt, NestedBlock):
    return stmt.sink.kind == SinkKind.RETURN
  if isinstance(stmt, IfCompound):
    if escape_always_fires(stmt.branches[0][0]):
      return True
    if stmt.orelse is None:
      return False
    return all(diverges(body) for _, body in stmt.branches) and diverges(stmt.orelse)
  # Loops may run zero times; an extended-let falls through to its continuation.
  return False


def diverges(block: Block) -> bool:
  """
  Checks whether every path through `block` diverges.

  Args:
      block: The block (typically a fallback arm body).

  Returns:
      bool: True if the block can never yield a value.
  """
  if any(statement_diverges(s) for s in block.statements):
    return True
  tail = block.tail
  if isinstance(tail, (EscapeExpr, IfCompound)):
    return statement_diverges(tail)
  if isinstance(tail, cst.BaseExpression):
    return escape_always_fires(tail)
  return False
