"""
Escape Scanner.

Determines whether an extended block needs the escape wrapper, i.e. whether
any escape expression it *owns* occurs anywhere inside it.

Ownership rule: escapes belong to the nearest enclosing extended block.
The scan therefore descends into compound bodies (if/while/for), fallback
arm bodies, tails and the host expressions that may carry a nested `^`,
but stops at nested extended blocks, which resolve their own escapes
independently.
"""

from typing import Dict, Tuple

import libcst as cst

from letmatch.core.grammar import (
  Block,
  EscapeExpr,
  ExtendedLet,
  ForCompound,
  IfCompound,
  Ordinary,
  Statement,
  WhileCompound,
  has_nested_escape,
)


class EscapeScanner:
  """
  Caching escape detector.

  Results are memoised per block instance, so the lowering engine can ask
  again for every compound body it walks without re-traversing the tree.

  Attributes:
      _cache: Maps `id(block)` to `(block, result)`. The block reference
          keeps the id stable for the scanner's lifetime.
  """

  def __init__(self) -> None:
    self._cache: Dict[int, Tuple[Block, bool]] = {}

  def contains_escape(self, block: Block) -> bool:
    """
    Checks whether `block` contains an escape it owns.

    Args:
        block: The block to scan. A boundary block is scanned as the owner;
            boundary blocks nested inside it are skipped.

    Returns:
        bool: True if a wrapper is required.
    """
    key = id(block)
    hit = self._cache.get(key)
    if hit is not None and hit[0] is block:
      return hit[1]

    result = any(self._statement_has_escape(s) for s in block.statements) or self._tail_has_escape(block)
    self._cache[key] = (block, result)
    return result

  def _tail_has_escape(self, block: Block) -> bool:
    tail = block.tail
    if isinstance(tail, EscapeExpr):
      return True
    if isinstance(tail, IfCompound):
      return self._statement_has_escape(tail)
    if isinstance(tail, cst.BaseExpression):
      return has_nested_escape(tail)
    # A Block tail is a nested boundary.
    return False

  def _statement_has_escape(self, stmt: Statement) -> bool:
    if isinstance(stmt, EscapeExpr):
      return True
    if isinstance(stmt, Ordinary):
      return has_nested_escape(stmt.node)
    if isinstance(stmt, ExtendedLet):
      return has_nested_escape(stmt.source) or any(self.contains_escape(arm.body) for arm in stmt.fallbacks)
    if isinstance(stmt, IfCompound):
      bodies = [body for _, body in stmt.branches]
      if stmt.orelse is not None:
        bodies.append(stmt.orelse)
      tests = any(has_nested_escape(test) for test, _ in stmt.branches)
      return tests or any(self.contains_escape(b) for b in bodies)
    if isinstance(stmt, ForCompound):
      return has_nested_escape(stmt.iter) or self.contains_escape(stmt.body)
    if isinstance(stmt, WhileCompound):
      return self.contains_escape(stmt.body)
    # NestedBlock owns its escapes.
    return False
