"""
Enumerations for letmatch.

This module defines the standard enumerations shared by the parser, the
lowering engine and the diagnostics layer.
"""

from enum import Enum


class SinkKind(str, Enum):
  """
  How the value of an extended block leaves the generated code.

  Python's ``match`` is a statement, so a block can only be expanded where a
  statement can carry its value onward.
  """

  ASSIGN = "assign"  # targets = do { ... }
  RETURN = "return"  # return do { ... }
  DISCARD = "discard"  # do { ... }


class DiagnosticKind(str, Enum):
  """
  Categories of reported problems.
  """

  PARSE = "parse"
  DIVERGENCE = "divergence"
  LOWERING = "lowering"
  EXHAUSTIVENESS = "exhaustiveness"
  HOST = "host"


class ParseErrorKind(str, Enum):
  """
  Distinct parse failures of the extended grammar.
  """

  MISSING_PATTERN = "missing_pattern"
  MISSING_SOURCE = "missing_source"
  MALFORMED_ARM = "malformed_arm"
  UNBALANCED = "unbalanced"
  INVALID_PATTERN = "invalid_pattern"
  HOST_SYNTAX = "host_syntax"
  ESCAPE_POSITION = "escape_position"
  BLOCK_POSITION = "block_position"
  EXPECTED_TOKEN = "expected_token"
  UNEXPECTED_CHARACTER = "unexpected_character"
