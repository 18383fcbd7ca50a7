"""
Extended Block Token Definitions.

Defines the enumerations for Token Kinds and Symbols used by the Lexer and Parser.
"""

from enum import Enum


class TokenKind(str, Enum):
  """Enumeration of Lexer Token Types."""

  COMMENT = "COMMENT"
  STRING = "STRING"
  NUMBER = "NUMBER"
  NAME = "NAME"
  ARROW = "ARROW"
  OPERATOR = "OPERATOR"
  SYMBOL = "SYMBOL"
  NEWLINE = "NEWLINE"
  CONTINUATION = "CONTINUATION"
  WHITESPACE = "WHITESPACE"
  MISMATCH = "MISMATCH"
  EOF = "EOF"


class Symbol(str, Enum):
  """Enumeration of Punctuation Symbols."""

  LBRACE = "{"
  RBRACE = "}"
  LPAREN = "("
  RPAREN = ")"
  LBRACKET = "["
  RBRACKET = "]"
  COMMA = ","
  SEMICOLON = ";"
  COLON = ":"
  EQUAL = "="
  ARROW = "=>"
  ESCAPE = "^"


class Keyword(str, Enum):
  """Soft keywords recognised at statement and arm boundaries."""

  LET = "let"
  MATCH = "match"
  ELSE = "else"
  ELIF = "elif"
  IF = "if"
  WHILE = "while"
  FOR = "for"
  IN = "in"
  RETURN = "return"
  RAISE = "raise"
  CONTINUE = "continue"
  BREAK = "break"


OPENERS = {
  Symbol.LPAREN.value: Symbol.RPAREN.value,
  Symbol.LBRACKET.value: Symbol.RBRACKET.value,
  Symbol.LBRACE.value: Symbol.RBRACE.value,
}
CLOSERS = {v: k for k, v in OPENERS.items()}
