"""
Tests for Diagnostics and the structural divergence check.
"""

from letmatch.core.diagnostics import (
  Diagnostic,
  DivergenceError,
  LetMatchError,
  ParseError,
  diverges,
)
from letmatch.core.grammar import Span
from letmatch.core.parser import ExtendedParser
from letmatch.enums import DiagnosticKind, ParseErrorKind


def block(text):
  return ExtendedParser(text).parse()


def test_diagnostic_render():
  diag = Diagnostic(
    kind=DiagnosticKind.PARSE,
    message="Extended let is missing its primary pattern",
    line=2,
    column=3,
    code="missing_pattern",
    filename="mod.py",
  )
  assert diag.render() == "mod.py:2:3: parse[missing_pattern]: Extended let is missing its primary pattern"


def test_diagnostic_render_without_code():
  diag = Diagnostic(kind=DiagnosticKind.DIVERGENCE, message="m", line=1, column=1)
  assert diag.render() == "<string>:1:1: divergence: m"


def test_parse_error_to_diagnostic():
  err = ParseError(ParseErrorKind.MALFORMED_ARM, "Trailing ','", Span(4, 10, 4, 11))
  diag = err.to_diagnostic("a.py")

  assert diag.kind == DiagnosticKind.PARSE
  assert diag.code == "malformed_arm"
  assert (diag.line, diag.column) == (4, 11)
  assert str(err) == "4:11: Trailing ','"


def test_error_hierarchy():
  err = DivergenceError("arm falls through", Span(1, 0, 1, 5))
  assert isinstance(err, LetMatchError)
  assert err.to_diagnostic().kind == DiagnosticKind.DIVERGENCE
  assert err.code is None


def test_error_without_span():
  err = LetMatchError("boom")
  assert str(err) == "boom"
  assert err.to_diagnostic().line == 0


def test_diverges_simple_forms():
  assert diverges(block("{ ^1 }"))
  assert diverges(block("{ return 1 }"))
  assert diverges(block("{ raise ValueError() }"))
  assert diverges(block("{ log(); continue }"))
  assert diverges(block("{ break }"))
  assert diverges(block("{ return do { 1 } }"))


def test_diverges_requires_every_if_branch():
  assert diverges(block("{ if a { return 1 } else { ^2 } }"))
  assert not diverges(block("{ if a { return 1 } }"))
  assert not diverges(block("{ if a { return 1 } else { 2 } }"))


def test_non_diverging_blocks():
  assert not diverges(block("{ 0 }"))
  assert not diverges(block("{ x = 1 }"))
  assert not diverges(block("{ while a { return 1 } }"))
  assert not diverges(block("{ y = do { ^1 } }"))


def test_nested_escape_divergence():
  assert diverges(block("{ x = ^1 }"))
  assert diverges(block("{ (^1) if a else (^2) }"))
  assert diverges(block("{ if ^c { 1 } }"))
  assert not diverges(block("{ a or ^1 }"))
  assert not diverges(block("{ y = a if b else ^1 }"))
