"""
Tests for the Escape Scanner.

Verifies that escapes are found through compounds, arm bodies and tails,
that nested extended blocks are treated as opaque, and that results are cached.
"""

from letmatch.core.parser import ExtendedParser
from letmatch.core.scanner import EscapeScanner


def scan(text: str) -> bool:
  return EscapeScanner().contains_escape(ExtendedParser(text).parse())


def test_no_escape():
  assert not scan("{ x = 1\n let Some(y) match x else => return 0\n y }")


def test_escape_statement_and_tail():
  assert scan("{ ^1\n 2 }")
  assert scan("{ x = 1\n ^x }")


def test_escape_in_fallback_arm():
  assert scan('{ let Some(t) match opt else => ^"none"; t }')


def test_escape_in_loop_body():
  assert scan("{ for x in xs { if x { ^x } }\n 0 }")
  assert scan("{ while True { ^1 } }")


def test_escape_in_tail_if_else():
  assert scan("{ if a { 1 } else { ^2 } }")


def test_nested_block_owns_its_escapes():
  """
  Scenario: Only an inner `do { }` contains an escape.
  Expectation: The outer block needs no wrapper.
  """
  assert not scan("{ y = do { ^1 }\n y }")
  assert not scan("{ do { ^1 } }")


def test_escape_inside_string_is_not_an_escape():
  assert not scan('{ x = "^1"\n x }')


def test_result_is_cached_per_block():
  block = ExtendedParser("{ if a { ^1 }\n 2 }").parse()
  scanner = EscapeScanner()

  assert scanner.contains_escape(block)
  assert id(block) in scanner._cache
  assert scanner._cache[id(block)] == (block, True)
  assert scanner.contains_escape(block)


def test_escape_nested_in_host_expression():
  assert scan("{ x = a or ^0\n x }")
  assert scan("{ a and ^1 }")
  assert scan("{ for x in xs or ^[] { f(x) } }")
  assert scan("{ let Some(v) match o or ^0\n v }")
  assert not scan("{ x = a ^ b\n x }")
