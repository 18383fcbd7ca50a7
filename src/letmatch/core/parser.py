"""
Extended Syntax Recursive Descent Parser.

This module turns the text of an extended block into the Grammar Model
defined in `grammar.py`. Only the extended constructs are parsed here:

- `let <pattern> match <expr> [else <arm>, <arm>...]`
- `<pattern> [if <guard>] => <body>` arms and the `else <body>` shorthand
- `^expr` escapes
- brace-bodied compounds (`if` / `elif` / `else`, `while`, `for`)
- nested `do { }` blocks at statement positions

Everything else is a host fragment. Its extent is found by bracket-aware
token scanning and its text is handed to LibCST (`parse_expression`,
`parse_statement`), producing opaque nodes.

Grammar decisions:
- The escape marker `^` is a prefix operator of the lowest precedence. Its
  operand runs to the end of the statement, or to the next `,` or unmatched
  closing bracket at its own nesting depth. `^` is a prefix wherever an
  operand is expected; binary `^` (xor) is untouched.
- A nested `^` may stand for a whole value (assignment, return or
  expression statement, tail, let source, `if` test, `for` iterable) or an
  operand of `and`, `or` and `... if ... else ...`. The lowering engine lifts
  it into `if` statements in evaluation order. Anywhere else (call
  arguments, guards, `while` tests) it is an `ESCAPE_POSITION` error.
- The first depth-0 `else` ends the source of an extended-let and the
  first depth-0 `{` ends a compound header. Conditional expressions and
  dict/set literals in those positions must be parenthesized.
"""

import keyword as py_keyword
import re
from dataclasses import dataclass
from typing import Callable, Generator, List, Optional, Tuple

import libcst as cst

from letmatch.core.diagnostics import LetMatchError, ParseError
from letmatch.core.grammar import (
  ESCAPE_CALLEE,
  Block,
  EscapeExpr,
  ExtendedLet,
  ForCompound,
  IfCompound,
  MatchArm,
  NestedBlock,
  Ordinary,
  Sink,
  Span,
  Statement,
  Tail,
  WhileCompound,
  escape_index,
  misplaced_escapes,
  nested_escapes,
)
from letmatch.core.tokens import CLOSERS, OPENERS, Keyword, Symbol, TokenKind
from letmatch.enums import ParseErrorKind, SinkKind


@dataclass
class Token:
  kind: str
  text: str
  line: int
  col: int
  offset: int
  end: int

  @property
  def span(self) -> Span:
    newlines = self.text.count("\n")
    if not newlines:
      return Span(self.line, self.col, self.line, self.col + len(self.text))
    return Span(self.line, self.col, self.line + newlines, len(self.text) - self.text.rfind("\n") - 1)


_STRING = (
  r"(?:[rRbBuUfF]{1,2})?"
  r"(?:'''(?:[^\\]|\\[\s\S])*?'''"
  r'|"""(?:[^\\]|\\[\s\S])*?"""'
  r"|'(?:[^'\\\n]|\\[\s\S])*'"
  r'|"(?:[^"\\\n]|\\[\s\S])*")'
)

_NUMBER = (
  r"0[xX][0-9a-fA-F_]+|0[oO][0-7_]+|0[bB][01_]+"
  r"|(?:\d[\d_]*(?:\.[\d_]*)?|\.\d[\d_]*)(?:[eE][+-]?\d[\d_]*)?[jJ]?"
)

_OPERATOR = r"\*\*=|//=|>>=|<<=|\.\.\.|->|:=|[-+*/%&|^@<>=!]=|\*\*|//|<<|>>|[-+*/%&|^@<>=~.!]"


class Tokenizer:
  PATTERN_DEFS = [
    (TokenKind.COMMENT, r"#[^\r\n]*"),
    (TokenKind.STRING, _STRING),
    (TokenKind.NUMBER, _NUMBER),
    (TokenKind.NAME, r"[^\W\d]\w*"),
    (TokenKind.ARROW, r"=>"),
    (TokenKind.OPERATOR, _OPERATOR),
    (TokenKind.SYMBOL, r"[(){}\[\],;:]"),
    (TokenKind.CONTINUATION, r"\\\r?\n"),
    (TokenKind.NEWLINE, r"\r?\n"),
    (TokenKind.WHITESPACE, r"[ \t\f]+"),
    (TokenKind.MISMATCH, r"."),
  ]

  _REGEX = re.compile("|".join(f"(?P<{kind.value}>{pattern})" for kind, pattern in PATTERN_DEFS))

  def __init__(self, text: str):
    self.text = text

  def tokenize(self) -> Generator[Token, None, None]:
    line_num = 1
    line_start = 0
    for mo in self._REGEX.finditer(self.text):
      kind = TokenKind(mo.lastgroup)
      value = mo.group()
      col = mo.start() - line_start

      if kind == TokenKind.MISMATCH:
        raise ParseError(
          ParseErrorKind.UNEXPECTED_CHARACTER,
          f"Unexpected character {value!r}",
          Span(line_num, col, line_num, col + 1),
        )

      yield Token(kind, value, line_num, col, mo.start(), mo.end())

      # Strings, continuations and newlines may span lines.
      newlines = value.count("\n")
      if newlines:
        line_num += newlines
        line_start = mo.start() + value.rfind("\n") + 1

    yield Token(TokenKind.EOF, "", line_num, len(self.text) - line_start, len(self.text), len(self.text))


_TRIVIA = (TokenKind.WHITESPACE, TokenKind.COMMENT, TokenKind.CONTINUATION)
_DIVERGING_KEYWORDS = {Keyword.RETURN.value, Keyword.RAISE.value, Keyword.CONTINUE.value, Keyword.BREAK.value}
_VALUE_KEYWORDS = {"True", "False", "None"}
_MISPLACED_ESCAPE = "Escape marker '^' can only stand for a whole value or an operand of 'and', 'or' or a conditional expression"


@dataclass
class InvocationSite:
  """
  A top-level `do { }` found in a Python module.

  Attributes:
      sink: How the block's value leaves the statement.
      block: The parsed block, or None if parsing failed.
      start: Offset of the beginning of the statement's line.
      end: Offset just past the closing brace.
      indent: Leading whitespace of the statement's line.
      span: Location of the whole statement.
      error: The failure that aborted this site, if any.
  """

  sink: Optional[Sink]
  block: Optional[Block]
  start: int
  end: int
  indent: str
  span: Span
  error: Optional[LetMatchError] = None


class ExtendedParser:
  """
  Parser for extended blocks.

  Operates on the significant tokens of `text` (whitespace, comments and
  line continuations removed) and keeps absolute offsets so host fragments
  can be sliced back out of the original text.
  """

  def __init__(self, text: str, keyword: str = "do", tokens: Optional[List[Token]] = None):
    self.text = text
    self.keyword = keyword
    raw = tokens if tokens is not None else list(Tokenizer(text).tokenize())
    self.tokens = [t for t in raw if t.kind not in _TRIVIA]
    self.pos = 0
    self._escape_spans: List[Span] = []

  # --- Token helpers ---

  def peek(self, offset: int = 0) -> Token:
    idx = self.pos + offset
    if idx >= len(self.tokens):
      return self.tokens[-1]
    return self.tokens[idx]

  def consume(self) -> Token:
    token = self.peek()
    self.pos += 1
    return token

  def _last(self) -> Token:
    return self.tokens[max(self.pos - 1, 0)]

  @staticmethod
  def _is_symbol(tok: Token, symbol: Symbol) -> bool:
    if symbol == Symbol.ARROW:
      return tok.kind == TokenKind.ARROW
    if symbol in (Symbol.ESCAPE, Symbol.EQUAL):
      return tok.kind == TokenKind.OPERATOR and tok.text == symbol.value
    return tok.kind == TokenKind.SYMBOL and tok.text == symbol.value

  @staticmethod
  def _is_name(tok: Token, word: str) -> bool:
    return tok.kind == TokenKind.NAME and tok.text == word

  def _at(self, symbol: Symbol) -> bool:
    return self._is_symbol(self.peek(), symbol)

  def _at_name(self, word: str) -> bool:
    return self._is_name(self.peek(), word)

  def _at_block_keyword(self, idx: int) -> bool:
    if idx + 1 >= len(self.tokens):
      return False
    return self._is_name(self.tokens[idx], self.keyword) and self._is_symbol(self.tokens[idx + 1], Symbol.LBRACE)

  def _at_stmt_end(self) -> bool:
    tok = self.peek()
    return (
      tok.kind in (TokenKind.NEWLINE, TokenKind.EOF)
      or self._is_symbol(tok, Symbol.SEMICOLON)
      or self._is_symbol(tok, Symbol.RBRACE)
    )

  def _skip_newlines(self) -> None:
    while self.peek().kind == TokenKind.NEWLINE:
      self.consume()

  def _skip_separators(self) -> None:
    while self.peek().kind == TokenKind.NEWLINE or self._at(Symbol.SEMICOLON):
      self.consume()

  def _expect(self, symbol: Symbol, context: str) -> Token:
    tok = self.peek()
    if self._is_symbol(tok, symbol):
      return self.consume()
    if tok.kind == TokenKind.EOF:
      raise ParseError(ParseErrorKind.UNBALANCED, f"Unexpected end of input, expected '{symbol.value}' {context}", tok.span)
    raise ParseError(
      ParseErrorKind.EXPECTED_TOKEN,
      f"Expected '{symbol.value}' {context}, got {tok.text!r}",
      tok.span,
    )

  def _span(self, first: Token, last: Token) -> Span:
    return first.span.to(last.span)

  def _slice(self, start: int, end: int) -> str:
    return self.text[self.tokens[start].offset : self.tokens[end - 1].end]

  # --- Fragment scanning ---

  def _is_prefix_position(self, prev: Optional[Token]) -> bool:
    if prev is None:
      return True
    if prev.kind in (TokenKind.OPERATOR, TokenKind.ARROW):
      return True
    if prev.kind == TokenKind.SYMBOL:
      return prev.text not in CLOSERS
    if prev.kind == TokenKind.NAME:
      return py_keyword.iskeyword(prev.text) and prev.text not in _VALUE_KEYWORDS
    return False

  def _scan(self, stop: Optional[Callable[[Token], bool]] = None) -> int:
    """
    Finds the end of the host fragment starting at `self.pos`.

    The fragment ends at the first depth-0 token that ends a statement
    (newline, `;`, the enclosing `}`, end of input) or satisfies `stop`.

    Args:
        stop: Extra depth-0 terminator.

    Returns:
        int: Index of the terminating token (not consumed).

    Raises:
        ParseError: On mismatched brackets or nested blocks.
    """
    openers: List[Token] = []
    i = self.pos
    while True:
      tok = self.tokens[i]
      if tok.kind == TokenKind.EOF:
        if openers:
          raise ParseError(ParseErrorKind.UNBALANCED, f"Unclosed '{openers[-1].text}'", openers[-1].span)
        return i

      if not openers:
        if stop is not None and stop(tok):
          return i
        if tok.kind == TokenKind.NEWLINE or self._is_symbol(tok, Symbol.SEMICOLON):
          return i
        if tok.kind == TokenKind.SYMBOL and tok.text in CLOSERS:
          if tok.text == Symbol.RBRACE.value:
            return i
          raise ParseError(ParseErrorKind.UNBALANCED, f"Unmatched '{tok.text}'", tok.span)

      if tok.kind == TokenKind.SYMBOL and tok.text in OPENERS:
        if self._at_block_keyword(i - 1) and i - 1 >= self.pos:
          raise ParseError(
            ParseErrorKind.BLOCK_POSITION,
            f"'{self.keyword} {{ }}' may only be a statement, an assigned value, a returned value or a tail",
            self.tokens[i - 1].span,
          )
        openers.append(tok)
      elif tok.kind == TokenKind.SYMBOL and tok.text in CLOSERS:
        opener = openers.pop()
        if OPENERS[opener.text] != tok.text:
          raise ParseError(
            ParseErrorKind.UNBALANCED,
            f"Mismatched '{tok.text}' closing '{opener.text}' opened at {opener.span}",
            tok.span,
          )
      i += 1

  def _find_depth0(self, predicate: Callable[[int], bool]) -> Optional[int]:
    """Lookahead without validation: first depth-0 index in this statement matching `predicate`."""
    depth = 0
    i = self.pos
    while i < len(self.tokens):
      tok = self.tokens[i]
      if tok.kind == TokenKind.EOF:
        return None
      if depth == 0:
        if predicate(i):
          return i
        if tok.kind == TokenKind.NEWLINE or self._is_symbol(tok, Symbol.SEMICOLON):
          return None
      if tok.kind == TokenKind.SYMBOL and tok.text in OPENERS:
        depth += 1
      elif tok.kind == TokenKind.SYMBOL and tok.text in CLOSERS:
        if depth == 0:
          return None
        depth -= 1
      i += 1
    return None

  # --- Host fragments ---

  def _operand_end(self, start: int, end: int) -> int:
    """End of a nested escape operand: the next `,` or unmatched closer at its own depth."""
    depth = 0
    for i in range(start, end):
      tok = self.tokens[i]
      if tok.kind != TokenKind.SYMBOL:
        continue
      if tok.text in OPENERS:
        depth += 1
      elif tok.text in CLOSERS:
        if not depth:
          return i
        depth -= 1
      elif tok.text == Symbol.COMMA.value and not depth:
        return i
    return end

  def _fragment(self, start: int, end: int) -> str:
    """
    Source text of tokens `start..end` as LibCST should see it.

    Every prefix `^operand` becomes `ESCAPE_CALLEE(operand, index)`, where
    `index` points into `self._escape_spans`.
    """
    pieces: List[str] = []
    cursor = self.tokens[start].offset
    prev: Optional[Token] = None
    i = start
    while i < end:
      tok = self.tokens[i]
      if self._is_symbol(tok, Symbol.ESCAPE) and self._is_prefix_position(prev):
        stop = self._operand_end(i + 1, end)
        if stop == i + 1:
          raise ParseError(ParseErrorKind.EXPECTED_TOKEN, "Escape marker '^' needs an operand", tok.span)
        index = len(self._escape_spans)
        self._escape_spans.append(tok.span)
        pieces.append(self.text[cursor : tok.offset])
        pieces.append(f"{ESCAPE_CALLEE}({self._fragment(i + 1, stop)}, {index})")
        cursor = self.tokens[stop - 1].end
        prev = self.tokens[stop - 1]
        i = stop
        continue
      if tok.kind != TokenKind.NEWLINE:
        prev = tok
      i += 1
    pieces.append(self.text[cursor : self.tokens[end - 1].end])
    return "".join(pieces)

  def _reject_escapes(self, escapes: List[cst.Call], message: str) -> None:
    if escapes:
      first = min(escape_index(call) for call in escapes)
      raise ParseError(ParseErrorKind.ESCAPE_POSITION, message, self._escape_spans[first])

  def _host_error(self, err: cst.ParserSyntaxError, what: str, start: int, end: int) -> ParseError:
    return ParseError(
      ParseErrorKind.HOST_SYNTAX,
      f"Invalid {what}: {err.message}",
      self._span(self.tokens[start], self.tokens[end - 1]),
    )

  def _parse_expression(self, start: int, end: int, what: str, escapes: bool = True) -> cst.BaseExpression:
    try:
      node = cst.parse_expression(self._fragment(start, end))
    except cst.ParserSyntaxError as e:
      raise self._host_error(e, what, start, end) from e
    if escapes:
      self._reject_escapes(misplaced_escapes(node), _MISPLACED_ESCAPE)
    else:
      self._reject_escapes(nested_escapes(node), f"Escape marker '^' is not allowed in a {what}")
    return node

  def _parse_pattern(self, start: int, end: int) -> cst.MatchPattern:
    source = f"match _:\n    case {self._slice(start, end)}:\n        pass\n"
    try:
      stmt = cst.parse_statement(source)
    except cst.ParserSyntaxError as e:
      raise ParseError(
        ParseErrorKind.INVALID_PATTERN,
        f"Invalid pattern: {e.message}",
        self._span(self.tokens[start], self.tokens[end - 1]),
      ) from e
    return stmt.cases[0].pattern

  def _parse_simple_statement(self, start: int, end: int) -> Ordinary:
    span = self._span(self.tokens[start], self.tokens[end - 1])
    try:
      node = cst.parse_statement(self._fragment(start, end))
    except cst.ParserSyntaxError as e:
      raise self._host_error(e, "statement", start, end) from e
    if not isinstance(node, cst.SimpleStatementLine):
      raise ParseError(
        ParseErrorKind.HOST_SYNTAX,
        "Compound statements inside extended blocks must use brace bodies",
        span,
      )
    self._reject_escapes(misplaced_escapes(node), _MISPLACED_ESCAPE)
    return Ordinary(node=node, span=span)

  # --- Entry points ---

  def parse(self) -> Block:
    """
    Parses a text holding exactly one block, `{ ... }` or `do { ... }`.

    Returns:
        Block: The boundary block.
    """
    self.pos = 0
    self._skip_newlines()
    if self._at_name(self.keyword):
      self.consume()
    block = self._parse_block(boundary=True)
    self._skip_newlines()
    tok = self.peek()
    if tok.kind != TokenKind.EOF:
      raise ParseError(ParseErrorKind.EXPECTED_TOKEN, f"Unexpected {tok.text!r} after block", tok.span)
    return block

  def parse_block(self, index: int, boundary: bool = True) -> Tuple[Block, int]:
    """
    Parses the block whose opening brace is at token `index`.

    Args:
        index: Index into the significant token list.
        boundary: Whether the block is an extended block owning its escapes.

    Returns:
        Tuple[Block, int]: The block and the index just past its closing brace.
    """
    self.pos = index
    block = self._parse_block(boundary)
    return block, self.pos

  def _parse_block(self, boundary: bool) -> Block:
    open_tok = self._expect(Symbol.LBRACE, "to open a block")
    items: List[Statement] = []
    while True:
      self._skip_separators()
      tok = self.peek()
      if tok.kind == TokenKind.EOF:
        raise ParseError(ParseErrorKind.UNBALANCED, "Unclosed '{'", open_tok.span)
      if self._is_symbol(tok, Symbol.RBRACE):
        close_tok = self.consume()
        break
      items.append(self._parse_statement())
      if not self._at_stmt_end():
        bad = self.peek()
        raise ParseError(
          ParseErrorKind.EXPECTED_TOKEN,
          f"Expected newline, ';' or '}}' after statement, got {bad.text!r}",
          bad.span,
        )

    statements, tail = self._split_tail(items)
    return Block(
      statements=tuple(statements),
      tail=tail,
      span=self._span(open_tok, close_tok),
      boundary=boundary,
    )

  @staticmethod
  def _split_tail(items: List[Statement]) -> Tuple[List[Statement], Optional[Tail]]:
    if not items:
      return items, None
    last = items[-1]
    tail: Optional[Tail] = None
    if isinstance(last, Ordinary):
      body = last.node.body
      if len(body) == 1 and isinstance(body[0], cst.Expr):
        tail = body[0].value
    elif isinstance(last, (IfCompound, EscapeExpr)):
      tail = last
    elif isinstance(last, NestedBlock) and last.sink.is_discard:
      tail = last.block
    if tail is None:
      return items, None
    return items[:-1], tail

  # --- Statements ---

  def _parse_statement(self) -> Statement:
    tok = self.peek()
    if self._is_symbol(tok, Symbol.ESCAPE):
      return self._parse_escape(in_arm=False)

    if tok.kind == TokenKind.NAME:
      if tok.text == Keyword.LET.value and self._find_depth0(lambda i: self._is_name(self.tokens[i], Keyword.MATCH.value)):
        return self._parse_extended_let()
      if tok.text == Keyword.IF.value:
        return self._parse_if()
      if tok.text == Keyword.WHILE.value:
        return self._parse_while()
      if tok.text == Keyword.FOR.value:
        return self._parse_for()

    kw_index = self._find_depth0(self._at_block_keyword)
    if kw_index is not None:
      return self._parse_nested_block(kw_index)

    start = self.pos
    end = self._scan()
    stmt = self._parse_simple_statement(start, end)
    self.pos = end
    return stmt

  def _parse_escape(self, in_arm: bool) -> EscapeExpr:
    marker = self.consume()
    start = self.pos
    if in_arm:
      end = self._scan(stop=lambda t: self._is_symbol(t, Symbol.COMMA))
    else:
      end = self._scan()
    if end == start:
      raise ParseError(ParseErrorKind.EXPECTED_TOKEN, "Escape marker '^' needs an operand", marker.span)
    value = self._parse_expression(start, end, "escape value")
    self.pos = end
    return EscapeExpr(value=value, span=self._span(marker, self._last()))

  def _sink_for_prefix(self, start: int, kw_index: int) -> Sink:
    """
    Classifies the tokens before `do {` as a sink.

    Args:
        start: Index of the first token of the statement.
        kw_index: Index of the block keyword.

    Returns:
        Sink: Discard, return or assign.
    """
    if start == kw_index:
      return Sink.discard()
    prefix = self.tokens[start:kw_index]
    if len(prefix) == 1 and self._is_name(prefix[0], Keyword.RETURN.value):
      return Sink.returning()
    if self._is_symbol(prefix[-1], Symbol.EQUAL):
      try:
        node = cst.parse_statement(self._slice(start, kw_index) + " None")
      except cst.ParserSyntaxError:
        node = None
      if isinstance(node, cst.SimpleStatementLine) and len(node.body) == 1 and isinstance(node.body[0], cst.Assign):
        return Sink(SinkKind.ASSIGN, tuple(node.body[0].targets))
    raise ParseError(
      ParseErrorKind.BLOCK_POSITION,
      f"'{self.keyword} {{ }}' may only be a statement, an assigned value, a returned value or a tail",
      self._span(prefix[0], self.tokens[kw_index]),
    )

  def _parse_nested_block(self, kw_index: int) -> NestedBlock:
    first = self.peek()
    sink = self._sink_for_prefix(self.pos, kw_index)
    self.pos = kw_index + 1
    block = self._parse_block(boundary=True)
    if not self._at_stmt_end():
      raise ParseError(
        ParseErrorKind.BLOCK_POSITION,
        f"'{self.keyword} {{ }}' must end its statement",
        self.peek().span,
      )
    return NestedBlock(block=block, sink=sink, span=self._span(first, self._last()))

  def _parse_extended_let(self) -> ExtendedLet:
    let_tok = self.consume()
    start = self.pos
    end = self._scan(stop=lambda t: self._is_name(t, Keyword.MATCH.value))
    if end == start:
      raise ParseError(ParseErrorKind.MISSING_PATTERN, "Extended let is missing its primary pattern", let_tok.span)
    primary = self._parse_pattern(start, end)
    self.pos = end

    match_tok = self.consume()
    start = self.pos
    end = self._scan(stop=lambda t: self._is_name(t, Keyword.ELSE.value))
    if end == start:
      raise ParseError(ParseErrorKind.MISSING_SOURCE, "Extended let is missing its source expression", match_tok.span)
    source = self._parse_expression(start, end, "source expression")
    self.pos = end

    fallbacks: List[MatchArm] = []
    if self._at_name(Keyword.ELSE.value):
      fallbacks = self._parse_arms(self.consume())

    return ExtendedLet(
      primary=primary,
      source=source,
      fallbacks=tuple(fallbacks),
      span=self._span(let_tok, self._last()),
    )

  def _parse_arms(self, else_tok: Token) -> List[MatchArm]:
    self._skip_newlines()
    if self._at_stmt_end():
      raise ParseError(ParseErrorKind.MALFORMED_ARM, "Expected a fallback arm after 'else'", else_tok.span)

    has_arrow = self._find_depth0(lambda i: self.tokens[i].kind == TokenKind.ARROW) is not None
    if not has_arrow:
      first = self.peek()
      body = self._parse_arm_body(first)
      return [
        MatchArm(
          pattern=cst.MatchAs(),
          guard=None,
          body=body,
          span=self._span(first, self._last()),
          shorthand=True,
        )
      ]

    arms = [self._parse_arm()]
    while self._at(Symbol.COMMA):
      comma = self.consume()
      self._skip_newlines()
      if self._at_stmt_end():
        raise ParseError(ParseErrorKind.MALFORMED_ARM, "Trailing ',' in arm list", comma.span)
      arms.append(self._parse_arm())
    return arms

  def _parse_arm(self) -> MatchArm:
    first = self.peek()
    start = self.pos
    end = self._scan(stop=lambda t: t.kind == TokenKind.ARROW or self._is_name(t, Keyword.IF.value))
    stop_tok = self.tokens[end]
    if stop_tok.kind != TokenKind.ARROW and not self._is_name(stop_tok, Keyword.IF.value):
      raise ParseError(ParseErrorKind.MALFORMED_ARM, "Expected '=>' in fallback arm", stop_tok.span)

    if end == start:
      if stop_tok.kind != TokenKind.ARROW:
        raise ParseError(ParseErrorKind.MALFORMED_ARM, "Fallback arm is missing its pattern", stop_tok.span)
      pattern: cst.MatchPattern = cst.MatchAs()
    else:
      pattern = self._parse_pattern(start, end)
    self.pos = end

    guard = None
    if self._at_name(Keyword.IF.value):
      if_tok = self.consume()
      start = self.pos
      end = self._scan(stop=lambda t: t.kind == TokenKind.ARROW)
      if end == start:
        raise ParseError(ParseErrorKind.MALFORMED_ARM, "Empty guard", if_tok.span)
      guard = self._parse_expression(start, end, "guard", escapes=False)
      self.pos = end

    if not self._at(Symbol.ARROW):
      raise ParseError(ParseErrorKind.MALFORMED_ARM, "Expected '=>' in fallback arm", self.peek().span)
    arrow = self.consume()
    self._skip_newlines()
    body = self._parse_arm_body(arrow)
    return MatchArm(pattern=pattern, guard=guard, body=body, span=self._span(first, self._last()))

  def _parse_arm_body(self, anchor: Token) -> Block:
    """
    Parses an arm body: `{ block }`, `^expr`, a diverging simple statement
    or a host expression.

    Non-block bodies are wrapped into a single-element block.
    """
    tok = self.peek()
    if self._is_symbol(tok, Symbol.LBRACE):
      return self._parse_block(boundary=False)
    if self._at_stmt_end():
      raise ParseError(ParseErrorKind.MALFORMED_ARM, "Fallback arm is missing its body", anchor.span)
    if self._is_symbol(tok, Symbol.ESCAPE):
      escape = self._parse_escape(in_arm=True)
      return Block(statements=(), tail=escape, span=escape.span)

    start = self.pos
    end = self._scan(stop=lambda t: self._is_symbol(t, Symbol.COMMA))
    span = self._span(self.tokens[start], self.tokens[end - 1])
    if tok.kind == TokenKind.NAME and tok.text in _DIVERGING_KEYWORDS:
      stmt = self._parse_simple_statement(start, end)
      self.pos = end
      return Block(statements=(stmt,), tail=None, span=span)

    value = self._parse_expression(start, end, "arm body")
    self.pos = end
    return Block(statements=(), tail=value, span=span)

  # --- Compounds ---

  def _parse_header(self, what: str, escapes: bool = True) -> cst.BaseExpression:
    start = self.pos
    end = self._scan(stop=lambda t: self._is_symbol(t, Symbol.LBRACE))
    if end == start:
      raise ParseError(ParseErrorKind.EXPECTED_TOKEN, f"Missing {what}", self.tokens[end].span)
    value = self._parse_expression(start, end, what, escapes)
    self.pos = end
    if not self._at(Symbol.LBRACE):
      raise ParseError(
        ParseErrorKind.EXPECTED_TOKEN,
        f"Expected '{{' after {what}; compound statements inside extended blocks use braces",
        self.peek().span,
      )
    return value

  def _parse_if(self) -> IfCompound:
    if_tok = self.consume()
    branches = []
    test = self._parse_header("if condition")
    branches.append((test, self._parse_block(boundary=False)))
    orelse: Optional[Block] = None

    while True:
      save = self.pos
      self._skip_newlines()
      if self._at_name(Keyword.ELIF.value):
        self.consume()
        test = self._parse_header("elif condition")
        branches.append((test, self._parse_block(boundary=False)))
        continue
      if self._at_name(Keyword.ELSE.value):
        self.consume()
        if self._at_name(Keyword.IF.value):
          self.consume()
          test = self._parse_header("else-if condition")
          branches.append((test, self._parse_block(boundary=False)))
          continue
        orelse = self._parse_block(boundary=False)
        break
      self.pos = save
      break

    return IfCompound(branches=tuple(branches), orelse=orelse, span=self._span(if_tok, self._last()))

  def _parse_while(self) -> WhileCompound:
    while_tok = self.consume()
    test = self._parse_header("while condition", escapes=False)
    body = self._parse_block(boundary=False)
    return WhileCompound(test=test, body=body, span=self._span(while_tok, self._last()))

  def _parse_for(self) -> ForCompound:
    for_tok = self.consume()
    start = self.pos
    end = self._scan(stop=lambda t: self._is_name(t, Keyword.IN.value))
    if end == start or not self._is_name(self.tokens[end], Keyword.IN.value):
      raise ParseError(ParseErrorKind.EXPECTED_TOKEN, "Expected 'for <target> in <iterable> {'", for_tok.span)
    try:
      header = cst.parse_statement(f"for {self._slice(start, end)} in _: pass")
    except cst.ParserSyntaxError as e:
      raise self._host_error(e, "loop target", start, end) from e
    self.pos = end + 1
    iterable = self._parse_header("loop iterable")
    body = self._parse_block(boundary=False)
    return ForCompound(target=header.target, iter=iterable, body=body, span=self._span(for_tok, self._last()))

  # --- Module level ---

  def _skip_braces(self, open_index: int) -> int:
    depth = 0
    i = open_index
    while i < len(self.tokens) - 1:
      tok = self.tokens[i]
      if self._is_symbol(tok, Symbol.LBRACE):
        depth += 1
      elif self._is_symbol(tok, Symbol.RBRACE):
        depth -= 1
        if depth == 0:
          return i + 1
      i += 1
    return len(self.tokens) - 1

  def parse_site(self, stmt_start: int, kw_index: int, depth: int) -> Tuple[InvocationSite, int]:
    """
    Parses one top-level invocation.

    Args:
        stmt_start: Index of the first token of the enclosing statement.
        kw_index: Index of the block keyword.
        depth: Bracket depth of the keyword in the surrounding module.

    Returns:
        Tuple[InvocationSite, int]: The site and the index to resume scanning at.
    """
    first = self.tokens[stmt_start]
    line_start = self.text.rfind("\n", 0, first.offset) + 1
    indent = self.text[line_start : first.offset]

    try:
      if depth or indent.strip():
        raise ParseError(
          ParseErrorKind.BLOCK_POSITION,
          f"'{self.keyword} {{ }}' may only be a statement, an assigned value or a returned value",
          self.tokens[kw_index].span,
        )
      sink = self._sink_for_prefix(stmt_start, kw_index)
      block, next_index = self.parse_block(kw_index + 1, boundary=True)
      tail = self.tokens[next_index]
      if tail.kind not in (TokenKind.NEWLINE, TokenKind.EOF):
        raise ParseError(ParseErrorKind.BLOCK_POSITION, f"'{self.keyword} {{ }}' must end its statement", tail.span)
    except LetMatchError as e:
      next_index = self._skip_braces(kw_index + 1)
      close = self.tokens[next_index - 1]
      return (
        InvocationSite(None, None, line_start, close.end, indent, self._span(first, close), error=e),
        next_index,
      )

    close = self.tokens[next_index - 1]
    site = InvocationSite(sink, block, line_start, close.end, indent, self._span(first, close))
    return site, next_index


def locate_sites(text: str, keyword: str = "do", tokens: Optional[List[Token]] = None) -> List[InvocationSite]:
  """
  Finds and parses every top-level extended block of a Python module.

  Blocks nested inside another block are handled by that block's parser.

  Args:
      text: Module source.
      keyword: Block keyword.
      tokens: Pre-computed tokens of `text` (all kinds).

  Returns:
      List[InvocationSite]: Sites in source order. Failed sites carry `error`.
  """
  parser = ExtendedParser(text, keyword, tokens)
  toks = parser.tokens
  sites: List[InvocationSite] = []
  depth = 0
  stmt_start = 0
  i = 0
  while toks[i].kind != TokenKind.EOF:
    tok = toks[i]
    if tok.kind == TokenKind.NEWLINE and depth == 0:
      stmt_start = i + 1
    elif parser._at_block_keyword(i):
      site, i = parser.parse_site(stmt_start, i, depth)
      sites.append(site)
      continue
    elif tok.kind == TokenKind.SYMBOL and tok.text in OPENERS:
      depth += 1
    elif tok.kind == TokenKind.SYMBOL and tok.text in CLOSERS:
      depth = max(depth - 1, 0)
    i += 1
  return sites
