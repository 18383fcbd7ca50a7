"""
Grammar Model for Extended Blocks.

This module defines the immutable data structures produced by the
`ExtendedParser` and consumed by the `LoweringEngine`.

Host-language fragments (expressions, simple statements, patterns and
assignment targets) are stored as opaque LibCST nodes. The engine splices
them into the generated tree. The only rewrite is the lifting of nested
`^` escapes (see `ESCAPE_CALLEE` below).

Structure:
    Block
      statements: Ordinary | ExtendedLet | IfCompound | WhileCompound
                  | ForCompound | NestedBlock | EscapeExpr
      tail:       expression | EscapeExpr | IfCompound | Block (nested, boundary)
"""

from dataclasses import dataclass, field
from typing import List, Optional, Tuple, Union

import libcst as cst
from libcst import matchers as m

from letmatch.enums import SinkKind


@dataclass(frozen=True)
class Span:
  """
  Source location of a grammar node.

  Lines are 1-based, columns are 0-based offsets into the line.
  """

  line: int
  column: int
  end_line: int
  end_column: int

  def __str__(self) -> str:
    return f"{self.line}:{self.column + 1}"

  def to(self, other: "Span") -> "Span":
    """Returns the span covering `self` through `other`."""
    return Span(self.line, self.column, other.end_line, other.end_column)


@dataclass(frozen=True)
class Sink:
  """
  Destination of a block's value.

  Attributes:
      kind: Assign, return or discard.
      targets: Assignment targets (only for `SinkKind.ASSIGN`).
      exit_flag: Name of the wrapper exit flag to raise after delivery.
          Only set on the internal sink of an escape wrapper.
  """

  kind: SinkKind
  targets: Tuple[cst.AssignTarget, ...] = ()
  exit_flag: Optional[str] = None

  @classmethod
  def assign(cls, *names: str) -> "Sink":
    """Builds an assign sink from plain identifiers."""
    return cls(SinkKind.ASSIGN, tuple(cst.AssignTarget(target=cst.Name(n)) for n in names))

  @classmethod
  def returning(cls) -> "Sink":
    return cls(SinkKind.RETURN)

  @classmethod
  def discard(cls) -> "Sink":
    return cls(SinkKind.DISCARD)

  def deliver(self, value: Optional[cst.BaseExpression]) -> List[cst.BaseStatement]:
    """
    Produces the statements that hand `value` to this sink.

    Args:
        value: The value expression, or None when the block produced no
            value (its last element was a plain statement).

    Returns:
        List of host statements. May be empty for a discard sink.
    """
    stmts: List[cst.BaseStatement] = []
    if self.kind == SinkKind.ASSIGN:
      # An unset value still has to overwrite the targets, except for the
      # wrapper slot which starts out as None.
      if value is not None or self.exit_flag is None:
        rhs = value if value is not None else cst.Name("None")
        stmts.append(cst.SimpleStatementLine(body=[cst.Assign(targets=list(self.targets), value=rhs)]))
    elif self.kind == SinkKind.RETURN:
      stmts.append(cst.SimpleStatementLine(body=[cst.Return(value=value)]))
    elif value is not None:
      stmts.append(cst.SimpleStatementLine(body=[cst.Expr(value=value)]))

    if self.exit_flag:
      stmts.append(_assign_name(self.exit_flag, cst.Name("True")))
    return stmts

  @property
  def is_discard(self) -> bool:
    return self.kind == SinkKind.DISCARD


def _assign_name(name: str, value: cst.BaseExpression) -> cst.SimpleStatementLine:
  return cst.SimpleStatementLine(body=[cst.Assign(targets=[cst.AssignTarget(target=cst.Name(name))], value=value)])


@dataclass(frozen=True)
class EscapeExpr:
  """
  `^value`: makes `value` the result of the nearest enclosing extended block.
  """

  value: cst.BaseExpression
  span: Span


@dataclass(frozen=True)
class Ordinary:
  """An opaque host simple statement."""

  node: cst.SimpleStatementLine
  span: Span


@dataclass(frozen=True)
class MatchArm:
  """
  A fallback arm of an extended-let.

  Attributes:
      pattern: Host pattern (`_` for the shorthand form).
      guard: Optional guard expression.
      body: The arm body. Plain expressions are stored as a one-element block.
      span: Location of the whole arm.
      shorthand: True if written as `else <body>` without `=>`.
  """

  pattern: cst.MatchPattern
  guard: Optional[cst.BaseExpression]
  body: "Block"
  span: Span
  shorthand: bool = False


@dataclass(frozen=True)
class ExtendedLet:
  """
  `let <primary> match <source> else <arms>`.

  Bindings of `primary` are only visible to the statements after this one
  in the same block.
  """

  primary: cst.MatchPattern
  source: cst.BaseExpression
  fallbacks: Tuple[MatchArm, ...]
  span: Span


@dataclass(frozen=True)
class IfCompound:
  """`if a { } elif b { } else { }` with brace bodies."""

  branches: Tuple[Tuple[cst.BaseExpression, "Block"], ...]
  orelse: Optional["Block"]
  span: Span


@dataclass(frozen=True)
class WhileCompound:
  test: cst.BaseExpression
  body: "Block"
  span: Span


@dataclass(frozen=True)
class ForCompound:
  target: cst.BaseAssignTargetExpression
  iter: cst.BaseExpression
  body: "Block"
  span: Span


@dataclass(frozen=True)
class NestedBlock:
  """An extended block used as a statement (`x = do { }`, `return do { }`)."""

  block: "Block"
  sink: Sink
  span: Span


Statement = Union[Ordinary, ExtendedLet, IfCompound, WhileCompound, ForCompound, NestedBlock, EscapeExpr]
Tail = Union[cst.BaseExpression, EscapeExpr, IfCompound, "Block"]


@dataclass(frozen=True)
class Block:
  """
  An ordered sequence of statements plus an optional tail value.

  Attributes:
      statements: Statements in source order.
      tail: Value of the block when no escape fires. None means the block
          ends in a plain statement and yields None.
      span: Location from the opening to the closing brace.
      boundary: True for extended blocks (`do { }`), which own the escapes
          written inside them. Compound and arm bodies are not boundaries.
  """

  statements: Tuple[Statement, ...] = ()
  tail: Optional[Tail] = None
  span: Span = field(default=Span(0, 0, 0, 0))
  boundary: bool = False

  @property
  def is_empty(self) -> bool:
    return not self.statements and self.tail is None


# --- Nested escapes ---
#
# A `^` inside a host expression is parsed as a call of `ESCAPE_CALLEE`
# carrying the operand and the escape's index in the parser's span table.
# The lowering engine lifts these calls out before the expression is emitted.

ESCAPE_CALLEE = "__letmatch_escape__"

_ESCAPE_CALL = m.Call(func=m.Name(ESCAPE_CALLEE), args=[m.Arg(), m.Arg(value=m.Integer())])
_LIFTABLE_SMALL = (cst.Expr, cst.Assign, cst.AnnAssign, cst.Return)


def escape_operand(node: cst.CSTNode) -> Optional[cst.BaseExpression]:
  """Returns the operand of a nested escape, or None for any other node."""
  if m.matches(node, _ESCAPE_CALL):
    return node.args[0].value
  return None


def escape_index(node: cst.Call) -> int:
  return int(node.args[1].value.value)


def nested_escapes(node: cst.CSTNode) -> List[cst.Call]:
  return list(m.findall(node, _ESCAPE_CALL))


def has_nested_escape(node: cst.CSTNode) -> bool:
  return bool(nested_escapes(node))


def statement_value(line: cst.SimpleStatementLine) -> Optional[cst.BaseExpression]:
  """
  The value an escape can be lifted from: the expression of an expression
  statement, or the right-hand side of an assignment or return.
  """
  if len(line.body) != 1 or not isinstance(line.body[0], _LIFTABLE_SMALL):
    return None
  return line.body[0].value


def escape_always_fires(expr: Optional[cst.BaseExpression]) -> bool:
  """Checks whether evaluating `expr` escapes on every path."""
  if expr is None:
    return False
  if escape_operand(expr) is not None:
    return True
  if isinstance(expr, cst.BooleanOperation):
    return escape_always_fires(expr.left)
  if isinstance(expr, cst.IfExp):
    return escape_always_fires(expr.test) or (escape_always_fires(expr.body) and escape_always_fires(expr.orelse))
  return False


def misplaced_escapes(node: cst.CSTNode) -> List[cst.Call]:
  """
  Nested escapes of `node` that cannot be lifted without changing
  evaluation order.

  Escapes can be lifted from the operands of `and`, `or` and conditional
  expressions, from escape operands, and from a whole value. For a simple
  statement only the value of `statement_value` qualifies.
  """
  if isinstance(node, cst.SimpleStatementLine):
    value = statement_value(node)
    if value is None:
      return nested_escapes(node)
    inside = {id(call) for call in nested_escapes(value)}
    outside = [call for call in nested_escapes(node) if id(call) not in inside]
    return outside + misplaced_escapes(value)

  operand = escape_operand(node)
  if operand is not None:
    return misplaced_escapes(operand)
  if isinstance(node, cst.BooleanOperation):
    return misplaced_escapes(node.left) + misplaced_escapes(node.right)
  if isinstance(node, cst.IfExp):
    return misplaced_escapes(node.test) + misplaced_escapes(node.body) + misplaced_escapes(node.orelse)
  return nested_escapes(node)
