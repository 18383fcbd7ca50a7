"""
Lowering Engine.

Translates a parsed extended block into plain Python statements built from
`match`, `if`, `while` and `for`.

Algorithm (continuation style, front-to-back):
- Ordinary statements are spliced unchanged, unless they hold a nested
  `^`. Those escapes are first lifted into `if` statements (`_lift`).
- `let P match S else arms` consumes the rest of the block: the rest is
  lowered first and becomes the body of the `case P:` clause, followed by
  one case per fallback arm.
- The tail is handed to the block's sink (assign, return or discard).

Escapes:
    If the block owns at least one `^expr`, the whole tree is placed inside a
    single-trip loop::

        _lm_result_0 = None
        _lm_exit_0 = False
        while not _lm_exit_0:
            <tree, whose sink is "assign _lm_result_0; set _lm_exit_0">
        <sink delivers _lm_result_0>

    Each escape becomes `slot = value; flag = True; break`. Host loops that
    contain an escape are followed by `if flag: break`, so the escape leaves
    every loop between it and the wrapper.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import libcst as cst

from letmatch.core.diagnostics import DivergenceError, LetMatchError, LoweringError, diverges, statement_diverges
from letmatch.core.grammar import (
  Block,
  EscapeExpr,
  ExtendedLet,
  ForCompound,
  IfCompound,
  NestedBlock,
  Ordinary,
  Sink,
  Span,
  Statement,
  Tail,
  WhileCompound,
  escape_operand,
  has_nested_escape,
)
from letmatch.core.naming import FreshNameAllocator, WrapperNames, get_allocator
from letmatch.core.scanner import EscapeScanner
from letmatch.core.tracer import TraceLogger, get_tracer
from letmatch.enums import SinkKind
from letmatch.utils.rendering import capture_node_source


@dataclass(frozen=True)
class ExhaustivenessObligation:
  """
  A catch-all case the host checker must prove unreachable.

  Attributes:
      subject: Hidden name capturing the unmatched value.
      span: Location of the extended-let that produced the match.
  """

  subject: str
  span: Span


@dataclass
class LoweredBlock:
  """
  Output of `LoweringEngine.lower`.

  Attributes:
      body: Host statements, ready to be spliced.
      sink: The sink the block delivers to.
      result_slot: Wrapper result slot, if a wrapper was needed.
      loop_label: Wrapper exit flag, if a wrapper was needed.
  """

  body: List[cst.BaseStatement] = field(default_factory=list)
  sink: Sink = field(default_factory=Sink.discard)
  result_slot: Optional[str] = None
  loop_label: Optional[str] = None

  @property
  def wrapped(self) -> bool:
    return self.result_slot is not None

  def to_statements(self) -> List[cst.BaseStatement]:
    if not self.body:
      return [_pass()]
    return list(self.body)


def _pass() -> cst.SimpleStatementLine:
  return cst.SimpleStatementLine(body=[cst.Pass()])


def _suite(stmts: List[cst.BaseStatement]) -> cst.IndentedBlock:
  return cst.IndentedBlock(body=stmts or [_pass()])


def _assign(name: str, value: cst.BaseExpression) -> cst.SimpleStatementLine:
  return cst.SimpleStatementLine(body=[cst.Assign(targets=[cst.AssignTarget(target=cst.Name(name))], value=value)])


def _break() -> cst.SimpleStatementLine:
  return cst.SimpleStatementLine(body=[cst.Break()])


def _match_case(
  pattern: cst.MatchPattern,
  body: cst.IndentedBlock,
  guard: Optional[cst.BaseExpression] = None,
) -> cst.MatchCase:
  if guard is None:
    return cst.MatchCase(pattern=pattern, body=body)
  # MatchCase renders no space around `if` unless told to.
  return cst.MatchCase(
    pattern=pattern,
    guard=guard,
    body=body,
    whitespace_before_if=cst.SimpleWhitespace(" "),
    whitespace_after_if=cst.SimpleWhitespace(" "),
  )


def is_irrefutable(pattern: cst.MatchPattern) -> bool:
  """
  Checks whether a pattern matches every subject.

  Irrefutable forms are a bare capture or wildcard, `(P as name)` with an
  irrefutable `P`, and an or-pattern with an irrefutable alternative.
  """
  if isinstance(pattern, cst.MatchAs):
    return pattern.pattern is None or is_irrefutable(pattern.pattern)
  if isinstance(pattern, cst.MatchOr):
    return any(is_irrefutable(element.pattern) for element in pattern.patterns)
  return False


class LoweringEngine:
  """
  Lowers boundary blocks into host statements.

  One engine serves a whole compilation unit: obligations, allocated
  wrappers and the `assert_never` alias accumulate across `lower` calls.

  Attributes:
      allocator: Source of hidden names.
      scanner: Escape detector deciding whether a wrapper is needed.
      emit_guard: Whether to append the `assert_never` catch-all case.
      obligations: Catch-all cases emitted so far.
      wrappers: Wrapper name pairs allocated so far.
  """

  def __init__(
    self,
    allocator: Optional[FreshNameAllocator] = None,
    scanner: Optional[EscapeScanner] = None,
    emit_guard: bool = True,
    tracer: Optional[TraceLogger] = None,
  ) -> None:
    self.allocator = allocator or get_allocator()
    self.scanner = scanner or EscapeScanner()
    self.emit_guard = emit_guard
    self.tracer = tracer or get_tracer()
    self.obligations: List[ExhaustivenessObligation] = []
    self.wrappers: List[WrapperNames] = []
    self._guard_callee: Optional[str] = None
    # Innermost active wrapper and the host loop depth inside it.
    self._wrapper: Optional[WrapperNames] = None
    self._loop_depth = 0

  @property
  def guard_callee(self) -> str:
    """Local alias of `typing.assert_never`, allocated on first use."""
    if self._guard_callee is None:
      self._guard_callee = self.allocator.fresh("assert_never")
    return self._guard_callee

  @property
  def uses_guard(self) -> bool:
    return self._guard_callee is not None

  def lower_site(self, block: Block, sink: Sink) -> LoweredBlock:
    """
    Lowers one invocation site, all or nothing.

    If lowering fails, the obligations and wrappers recorded for the site are
    discarded before the error propagates, so a site left verbatim leaves no
    trace in `obligations` or `wrappers`.
    """
    mark = (len(self.obligations), len(self.wrappers))
    try:
      return self.lower(block, sink)
    except LetMatchError:
      del self.obligations[mark[0] :]
      del self.wrappers[mark[1] :]
      raise

  def lower(self, block: Block, sink: Sink) -> LoweredBlock:
    """
    Lowers a boundary block.

    Args:
        block: The extended block.
        sink: Where its value goes.

    Returns:
        LoweredBlock: Host statements, plus the wrapper names if any.

    Raises:
        DivergenceError: A fallback arm can fall through.
        LoweringError: Loop control would target the wrapper loop.
    """
    if not self.scanner.contains_escape(block):
      self.tracer.log_block(str(block.span), wrapped=False, sink=sink.kind.value)
      return LoweredBlock(body=self._lower_block(block, sink), sink=sink)

    names = self.allocator.allocate_wrapper()
    self.wrappers.append(names)
    self.tracer.log_wrapper(names.result_slot, names.loop_label)

    internal = Sink(
      SinkKind.ASSIGN,
      (cst.AssignTarget(target=cst.Name(names.result_slot)),),
      exit_flag=names.loop_label,
    )
    saved = (self._wrapper, self._loop_depth)
    self._wrapper, self._loop_depth = names, 0
    try:
      tree = self._lower_block(block, internal)
    finally:
      self._wrapper, self._loop_depth = saved

    body: List[cst.BaseStatement] = [
      _assign(names.result_slot, cst.Name("None")),
      _assign(names.loop_label, cst.Name("False")),
      cst.While(
        test=cst.UnaryOperation(operator=cst.Not(), expression=cst.Name(names.loop_label)),
        body=_suite(tree),
      ),
    ]
    if not sink.is_discard:
      body.extend(sink.deliver(cst.Name(names.result_slot)))

    self.tracer.log_block(str(block.span), wrapped=True, sink=sink.kind.value)
    return LoweredBlock(body=body, sink=sink, result_slot=names.result_slot, loop_label=names.loop_label)

  # --- Sequences ---

  def _lower_block(self, block: Block, sink: Sink) -> List[cst.BaseStatement]:
    out: List[cst.BaseStatement] = []
    for index, stmt in enumerate(block.statements):
      if isinstance(stmt, ExtendedLet):
        rest = Block(
          statements=block.statements[index + 1 :],
          tail=block.tail,
          span=block.span,
          boundary=block.boundary,
        )
        out.extend(self._lower_let(stmt, rest, sink))
        return out
      out.extend(self._lower_statement(stmt))
      if statement_diverges(stmt):
        return out
    out.extend(self._lower_tail(block.tail, sink, block.span))
    return out

  def _lower_tail(self, tail: Optional[Tail], sink: Sink, span: Span) -> List[cst.BaseStatement]:
    if tail is None:
      return sink.deliver(None)
    if isinstance(tail, EscapeExpr):
      return self._lower_escape(tail)
    if isinstance(tail, IfCompound):
      return self._lower_if(tail, sink)
    if isinstance(tail, Block):
      return self.lower(tail, sink).body
    prelude, value = self._lift(tail, span)
    if value is None:
      return prelude
    return prelude + sink.deliver(value)

  def _lower_statement(self, stmt: Statement) -> List[cst.BaseStatement]:
    if isinstance(stmt, Ordinary):
      self._check_loop_control(stmt)
      return self._lift_statement(stmt)
    if isinstance(stmt, EscapeExpr):
      return self._lower_escape(stmt)
    if isinstance(stmt, IfCompound):
      return self._lower_if(stmt, Sink.discard())
    if isinstance(stmt, (WhileCompound, ForCompound)):
      return self._lower_loop(stmt)
    if isinstance(stmt, NestedBlock):
      return self.lower(stmt.block, stmt.sink).body
    raise LoweringError(f"Unsupported statement {type(stmt).__name__}")

  # --- Nested escapes ---

  def _lift(
    self, expr: cst.BaseExpression, span: Span
  ) -> Tuple[List[cst.BaseStatement], Optional[cst.BaseExpression]]:
    """
    Moves the nested escapes of `expr` into statements.

    `a or ^e` becomes::

        _lm_value_0 = a
        if not _lm_value_0:
            <escape e>

    with `_lm_value_0` left as the value. Operands are evaluated in their
    original order and only when the original expression would evaluate them.

    Args:
        expr: Host expression, possibly holding `ESCAPE_CALLEE` calls.
        span: Location reported for errors.

    Returns:
        The statements to run first, and the expression yielding the value
        afterwards. The expression is None when every path escapes.
    """
    operand = escape_operand(expr)
    if operand is not None:
      prelude, value = self._lift(operand, span)
      if value is None:
        return prelude, None
      return prelude + self._escape_to(value, span), None

    if not has_nested_escape(expr):
      return [], expr

    if isinstance(expr, cst.BooleanOperation):
      prelude, left = self._lift(expr.left, span)
      if left is None:
        return prelude, None
      if not has_nested_escape(expr.right):
        return prelude, expr.with_changes(left=left)
      temp = self.allocator.fresh("value")
      branch, right = self._lift(expr.right, span)
      if right is not None:
        branch.append(_assign(temp, right))
      test: cst.BaseExpression = cst.Name(temp)
      if isinstance(expr.operator, cst.Or):
        test = cst.UnaryOperation(operator=cst.Not(), expression=cst.Name(temp))
      prelude.append(_assign(temp, left))
      prelude.append(cst.If(test=test, body=_suite(branch)))
      return prelude, cst.Name(temp)

    if isinstance(expr, cst.IfExp):
      prelude, test = self._lift(expr.test, span)
      if test is None:
        return prelude, None
      temp = self.allocator.fresh("value")
      body, body_value = self._lift(expr.body, span)
      orelse, orelse_value = self._lift(expr.orelse, span)
      if body_value is not None:
        body.append(_assign(temp, body_value))
      if orelse_value is not None:
        orelse.append(_assign(temp, orelse_value))
      prelude.append(cst.If(test=test, body=_suite(body), orelse=cst.Else(body=_suite(orelse))))
      if body_value is None and orelse_value is None:
        return prelude, None
      return prelude, cst.Name(temp)

    raise LoweringError("Escape marker '^' cannot be lifted out of this expression", span)

  def _lift_statement(self, stmt: Ordinary) -> List[cst.BaseStatement]:
    if not has_nested_escape(stmt.node):
      return [stmt.node]
    small = stmt.node.body[0]
    prelude, value = self._lift(small.value, stmt.span)
    if value is None:
      return prelude
    return prelude + [stmt.node.with_changes(body=[small.with_changes(value=value)])]

  # --- Constructs ---

  def _lower_let(self, let: ExtendedLet, rest: Block, sink: Sink) -> List[cst.BaseStatement]:
    prelude, source = self._lift(let.source, let.span)
    if source is None:
      return prelude

    cases = [cst.MatchCase(pattern=let.primary, body=_suite(self._lower_block(rest, sink)))]

    for arm in let.fallbacks:
      if not diverges(arm.body):
        raise DivergenceError(
          "Fallback arm must diverge (escape, return, raise, break or continue)",
          arm.span,
        )
      cases.append(_match_case(arm.pattern, _suite(self._lower_block(arm.body, Sink.discard())), arm.guard))

    covered = any(is_irrefutable(c.pattern) and c.guard is None for c in cases)
    source_text = capture_node_source(source)
    if covered:
      self.tracer.log_inspection(source_text, "covered", "an unguarded case is irrefutable")
    if not covered and self.emit_guard:
      subject = self.allocator.fresh("unmatched")
      call = cst.Call(func=cst.Name(self.guard_callee), args=[cst.Arg(value=cst.Name(subject))])
      cases.append(
        cst.MatchCase(
          pattern=cst.MatchAs(name=cst.Name(subject)),
          body=_suite([cst.SimpleStatementLine(body=[cst.Expr(value=call)])]),
        )
      )
      self.obligations.append(ExhaustivenessObligation(subject=subject, span=let.span))
      self.tracer.log_inspection(source_text, "guarded", f"catch-all binds {subject}")

    return prelude + [cst.Match(subject=source, cases=cases)]

  def _lower_if(self, stmt: IfCompound, sink: Sink) -> List[cst.BaseStatement]:
    if stmt.orelse is not None:
      else_body: Optional[List[cst.BaseStatement]] = self._lower_block(stmt.orelse, sink)
    else:
      # A missing else still yields None to value sinks.
      else_body = sink.deliver(None) or None

    # Built back to front. A test with a lifted escape needs its statements
    # in an `else:` suite, so its branch cannot be rendered as `elif`.
    chain: List[cst.BaseStatement] = []
    orelse: Optional[cst.CSTNode] = cst.Else(body=_suite(else_body)) if else_body is not None else None
    for test, body in reversed(stmt.branches):
      prelude, lifted = self._lift(test, stmt.span)
      chain = prelude
      if lifted is not None:
        chain.append(cst.If(test=lifted, body=_suite(self._lower_block(body, sink)), orelse=orelse))
      if len(chain) == 1 and isinstance(chain[0], cst.If):
        orelse = chain[0]
      else:
        orelse = cst.Else(body=_suite(chain))
    return chain

  def _lower_loop(self, stmt) -> List[cst.BaseStatement]:
    prelude: List[cst.BaseStatement] = []
    if isinstance(stmt, ForCompound):
      prelude, iterable = self._lift(stmt.iter, stmt.span)
      if iterable is None:
        return prelude

    self._loop_depth += 1
    try:
      body = _suite(self._lower_block(stmt.body, Sink.discard()))
    finally:
      self._loop_depth -= 1

    if isinstance(stmt, WhileCompound):
      loop: cst.BaseCompoundStatement = cst.While(test=stmt.test, body=body)
    else:
      loop = cst.For(target=stmt.target, iter=iterable, body=body)

    out: List[cst.BaseStatement] = prelude + [loop]
    if self._wrapper is not None and self.scanner.contains_escape(stmt.body):
      out.append(
        cst.If(
          test=cst.Name(self._wrapper.loop_label),
          body=_suite([_break()]),
        )
      )
    return out

  def _lower_escape(self, escape: EscapeExpr) -> List[cst.BaseStatement]:
    prelude, value = self._lift(escape.value, escape.span)
    if value is None:
      return prelude
    return prelude + self._escape_to(value, escape.span)

  def _escape_to(self, value: cst.BaseExpression, span: Span) -> List[cst.BaseStatement]:
    if self._wrapper is None:
      raise LoweringError("Escape outside of an extended block", span)
    return [
      _assign(self._wrapper.result_slot, value),
      _assign(self._wrapper.loop_label, cst.Name("True")),
      _break(),
    ]

  def _check_loop_control(self, stmt: Ordinary) -> None:
    if self._wrapper is None or self._loop_depth:
      return
    for small in stmt.node.body:
      if isinstance(small, (cst.Break, cst.Continue)):
        keyword = "break" if isinstance(small, cst.Break) else "continue"
        raise LoweringError(
          f"'{keyword}' outside a host loop would exit the escape wrapper of this block",
          stmt.span,
        )
