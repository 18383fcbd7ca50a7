"""
Tests for the Lowering Engine.

Verifies:
1. Blocks without escapes lower to a bare match/if tree (no wrapper).
2. The wrapper shape and escape rewriting.
3. Exhaustiveness guards and obligations.
4. Loop exits, nested blocks and distinct hidden names.
5. Divergence and loop-control errors.
"""

import textwrap

import libcst as cst
import pytest

from letmatch.core.diagnostics import DivergenceError, LoweringError
from letmatch.core.grammar import Sink
from letmatch.core.lowering import LoweringEngine, is_irrefutable
from letmatch.core.naming import FreshNameAllocator
from letmatch.core.parser import ExtendedParser
from letmatch.core.tracer import TraceLogger
from letmatch.utils.rendering import render_statements


def lower(text: str, sink: Sink = None, **kwargs):
  engine = LoweringEngine(allocator=FreshNameAllocator(), tracer=TraceLogger(), **kwargs)
  lowered = engine.lower(ExtendedParser(text).parse(), sink or Sink.returning())
  return engine, lowered


def render(lowered) -> str:
  return render_statements(lowered.to_statements())


def pattern(text: str) -> cst.MatchPattern:
  return cst.parse_statement(f"match s:\n    case {text}:\n        pass\n").cases[0].pattern


def test_scenario_one_wrapper_text():
  _, lowered = lower('{ let Some(t) match opt else => ^"none"; use(t) }')

  expected = textwrap.dedent(
    """\
    _lm_result_0 = None
    _lm_exit_0 = False
    while not _lm_exit_0:
        match opt:
            case Some(t):
                _lm_result_0 = use(t)
                _lm_exit_0 = True
            case _:
                _lm_result_0 = "none"
                _lm_exit_0 = True
                break
    return _lm_result_0
    """
  )
  assert render(lowered) == expected
  assert lowered.wrapped
  assert (lowered.result_slot, lowered.loop_label) == ("_lm_result_0", "_lm_exit_0")


def test_no_escape_is_bare_tree():
  """
  Scenario: Fallback diverges with `return`, no escape anywhere.
  Expectation: A single match statement, no slot or loop.
  """
  engine, lowered = lower('{ let Some(t) match opt else => return "none"\n t * 2 }')

  assert not lowered.wrapped
  assert engine.wrappers == []
  assert len(lowered.body) == 1
  assert isinstance(lowered.body[0], cst.Match)
  code = render(lowered)
  assert "while" not in code
  assert "_lm_result" not in code
  assert "return t * 2" in code


def test_assign_sink_without_escape():
  _, lowered = lower("{ x = 1\n x + 1 }", Sink.assign("y"))
  assert render(lowered) == "x = 1\ny = x + 1\n"


def test_assign_sink_no_tail_yields_none():
  _, lowered = lower("{ x = 1 }", Sink.assign("y"))
  assert render(lowered) == "x = 1\ny = None\n"


def test_discard_sink_keeps_tail_side_effect():
  _, lowered = lower("{ f() }", Sink.discard())
  assert render(lowered) == "f()\n"


def test_empty_block_renders_pass():
  _, lowered = lower("{ }", Sink.discard())
  assert render(lowered) == "pass\n"


def test_discard_wrapper_has_no_trailing_read():
  _, lowered = lower("{ if a { ^1 }\n b() }", Sink.discard())
  code = render(lowered)
  assert code.splitlines()[-1].strip() != "_lm_result_0"
  assert isinstance(lowered.body[-1], cst.While)


def test_tail_if_without_else_delivers_none():
  _, lowered = lower("{ if a { 1 } }", Sink.assign("y"))
  assert render(lowered) == "if a:\n    y = 1\nelse:\n    y = None\n"


def test_elif_chain():
  _, lowered = lower("{ if a { 1 } elif b { 2 } else { 3 } }")
  assert render(lowered) == "if a:\n    return 1\nelif b:\n    return 2\nelse:\n    return 3\n"


def test_guard_added_when_no_case_is_irrefutable():
  engine, lowered = lower("{ let Some(x) match opt\n x }")
  code = render(lowered)

  assert engine.uses_guard
  assert len(engine.obligations) == 1
  obligation = engine.obligations[0]
  assert obligation.subject == "_lm_unmatched_0"
  assert obligation.span.line == 1
  assert engine.guard_callee == "_lm_assert_never_1"
  assert "case _lm_unmatched_0:" in code
  assert "_lm_assert_never_1(_lm_unmatched_0)" in code


def test_guard_omitted_with_irrefutable_fallback():
  engine, lowered = lower("{ let Some(x) match opt else _ => return 0\n x }")
  assert engine.obligations == []
  assert not engine.uses_guard


def test_guarded_wildcard_still_needs_guard():
  engine, _ = lower("{ let Some(x) match opt else _ if flag => return 0\n x }")
  assert len(engine.obligations) == 1


def test_guard_can_be_disabled():
  engine, lowered = lower("{ let Some(x) match opt\n x }", emit_guard=False)
  assert engine.obligations == []
  assert "assert_never" not in render(lowered)


def test_is_irrefutable():
  assert is_irrefutable(pattern("_"))
  assert is_irrefutable(pattern("x"))
  assert is_irrefutable(pattern("(_ as y)"))
  assert is_irrefutable(pattern("1 | _"))
  assert not is_irrefutable(pattern("Some(x)"))
  assert not is_irrefutable(pattern("[x]"))
  assert not is_irrefutable(pattern("1 | 2"))


def test_order_of_statements_around_let():
  _, lowered = lower("{ a()\n b()\n let Some(v) match opt else => ^0\n c()\n v }")
  code = render(lowered)
  assert code.index("a()") < code.index("b()") < code.index("match opt:") < code.index("c()")
  # Statements before the let appear exactly once.
  assert code.count("a()") == 1


def test_escape_in_nested_loops_exits_every_loop():
  """
  Scenario: Escape two host loops deep.
  Expectation: Each loop is followed by an exit-flag check.
  """
  _, lowered = lower("{ for row in grid { for x in row { if x { ^x } } }\n None }")
  code = render(lowered)
  assert code.count("if _lm_exit_0:\n") == 2
  assert code.count("break") == 3


def test_loop_without_escape_has_no_flag_check():
  _, lowered = lower("{ for x in xs { total += x }\n if a { ^1 }\n total }")
  assert "if _lm_exit_0:" not in render(lowered)


def test_dead_code_after_divergence_is_dropped():
  _, lowered = lower("{ return 1\n unreachable() }", Sink.discard())
  assert render(lowered) == "return 1\n"


def test_nested_blocks_get_distinct_names():
  engine, lowered = lower("{ y = do { if c { ^1 }; 2 }\n if d { ^y }\n y }")
  assert len(engine.wrappers) == 2
  outer, inner = engine.wrappers
  assert outer.result_slot != inner.result_slot
  assert outer.loop_label != inner.loop_label

  code = render(lowered)
  assert f"y = {inner.result_slot}" in code
  assert f"{outer.result_slot} = y" in code


def test_inner_escape_does_not_touch_outer_wrapper():
  engine, lowered = lower("{ y = do { ^1 }\n y }")
  assert not lowered.wrapped
  assert len(engine.wrappers) == 1


def test_tail_nested_block_delivers_to_outer_sink():
  _, lowered = lower("{ x = 1\n do { ^x } }", Sink.assign("out"))
  code = render(lowered)
  assert code.rstrip().endswith("out = _lm_result_0")


def test_non_diverging_arm_is_rejected():
  with pytest.raises(DivergenceError) as excinfo:
    lower("{\n  let Some(x) match opt else None => 0\n  x\n}")
  assert excinfo.value.span.line == 2


def test_break_outside_loop_in_wrapped_block():
  with pytest.raises(LoweringError):
    lower("{ if c { ^1 }\n break }", Sink.discard())


def test_break_inside_host_loop_is_allowed():
  _, lowered = lower("{ for x in xs { if x { break } }\n if c { ^1 }\n 0 }")
  assert "break" in render(lowered)


def test_break_without_wrapper_keeps_host_meaning():
  _, lowered = lower("{ if c { break }\n 0 }", Sink.discard())
  assert "break" in render(lowered)


def test_trace_records_wrapper():
  tracer = TraceLogger()
  engine = LoweringEngine(allocator=FreshNameAllocator(), tracer=tracer)
  engine.lower(ExtendedParser("{ ^1 }").parse(), Sink.returning())

  types = [e["type"] for e in tracer.export()]
  assert "wrapper_allocated" in types
  assert "block_lowered" in types


def test_guarded_arm_renders_spaced_if():
  """
  Scenario: Fallback arm `x if x > 0`.
  Expectation: `case x if x > 0:`, which the host compiler accepts.
  """
  _, lowered = lower(
    "{ let Some(n) match v else x if x > 0 => raise ValueError(x), _ => raise TypeError()\n n }",
    Sink.assign("y"),
  )
  code = render(lowered)
  assert "    case x if x > 0:\n" in code
  compile(code, "<lowered>", "exec")


def test_failed_site_leaves_no_obligations_or_wrappers():
  """
  Scenario: The continuation records an obligation and a wrapper, then an
  earlier arm fails the divergence check.
  Expectation: Both are discarded; a later site starts from a clean slate.
  """
  engine = LoweringEngine(allocator=FreshNameAllocator(), tracer=TraceLogger())
  failing = ExtendedParser("{ let Some(t) match o else => 5\n let Some(u) match p\n if u { ^0 }\n u }").parse()

  with pytest.raises(DivergenceError):
    engine.lower_site(failing, Sink.returning())
  assert engine.obligations == []
  assert engine.wrappers == []

  engine.lower_site(ExtendedParser("{ let Some(u) match p\n u }").parse(), Sink.returning())
  assert len(engine.obligations) == 1


def test_escape_operand_of_or_is_lifted():
  _, lowered = lower("{ x = a or ^0\n x }")

  expected = textwrap.dedent(
    """\
    _lm_result_0 = None
    _lm_exit_0 = False
    while not _lm_exit_0:
        _lm_value_1 = a
        if not _lm_value_1:
            _lm_result_0 = 0
            _lm_exit_0 = True
            break
        x = _lm_value_1
        _lm_result_0 = x
        _lm_exit_0 = True
    return _lm_result_0
    """
  )
  assert render(lowered) == expected


def test_escape_in_conditional_branch_is_lifted():
  _, lowered = lower('{ y = v if ok else ^"bad"\n y }')

  expected = textwrap.dedent(
    """\
    _lm_result_0 = None
    _lm_exit_0 = False
    while not _lm_exit_0:
        if ok:
            _lm_value_1 = v
        else:
            _lm_result_0 = "bad"
            _lm_exit_0 = True
            break
        y = _lm_value_1
        _lm_result_0 = y
        _lm_exit_0 = True
    return _lm_result_0
    """
  )
  assert render(lowered) == expected


def test_escape_in_elif_test_breaks_the_chain():
  _, lowered = lower("{ if a { 1 } elif b or ^2 { 3 } else { 4 } }")
  code = render(lowered)

  assert "elif" not in code
  assert code.index("if a:") < code.index("_lm_value_1 = b") < code.index("if _lm_value_1:")
  compile(code.replace("return _lm_result_0", "pass"), "<lowered>", "exec")


def test_whole_value_escape_drops_the_statement():
  _, lowered = lower("{ if c { x = ^1 }\n 2 }", Sink.discard())
  code = render(lowered)
  assert "x =" not in code
  assert "_lm_result_0 = 1" in code
