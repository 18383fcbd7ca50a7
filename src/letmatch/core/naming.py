"""
Fresh-Name Allocator for Generated Code.

This module provides the `FreshNameAllocator`, which hands out the hidden
identifiers used by the lowering engine (wrapper result slots, exit flags,
exhaustiveness guard captures). It guarantees:
- One monotonic counter per allocator, never rewound, so sibling and nested
  blocks always receive distinct names.
- No collision with identifiers the user wrote in the same compilation unit
  (registered through `reserve`).
- Deterministic output for a given starting counter.
"""

import itertools
import keyword
from dataclasses import dataclass
from typing import Dict, Iterable, Set


@dataclass(frozen=True)
class WrapperNames:
  """
  Hidden identifiers of one escape wrapper.

  Attributes:
      result_slot: Mutable binding receiving the block's value.
      loop_label: Flag naming the single-trip loop; set once the value is known.
  """

  result_slot: str
  loop_label: str


class FreshNameAllocator:
  """
  Allocates unique hidden identifiers.
  """

  def __init__(self, prefix: str = "_lm", start: int = 0) -> None:
    """
    Args:
        prefix: Leading part of every generated identifier.
        start: First counter value.
    """
    if not prefix.isidentifier() or keyword.iskeyword(prefix):
      raise ValueError(f"Invalid hidden name prefix: {prefix!r}")
    self.prefix = prefix
    self._counter = itertools.count(start)
    self._reserved: Set[str] = set()

  def reserve(self, names: Iterable[str]) -> None:
    """
    Registers user identifiers that generated names must avoid.

    Args:
        names: Identifiers found in the source being expanded.
    """
    self._reserved.update(names)

  def is_reserved(self, name: str) -> bool:
    return name in self._reserved

  def _draw(self, *roles: str) -> Dict[str, str]:
    # One counter value per call; values whose names clash are skipped.
    while True:
      index = next(self._counter)
      names = {role: f"{self.prefix}_{role}_{index}" for role in roles}
      if not any(n in self._reserved for n in names.values()):
        self._reserved.update(names.values())
        return names

  def allocate_wrapper(self) -> WrapperNames:
    """
    Draws the result slot and loop label of one wrapper.

    Both names share a single counter value.

    Returns:
        WrapperNames: The fresh pair.
    """
    names = self._draw("result", "exit")
    return WrapperNames(result_slot=names["result"], loop_label=names["exit"])

  def fresh(self, role: str) -> str:
    """
    Draws a single hidden identifier.

    Args:
        role: Short tag embedded in the name (e.g. "unmatched").

    Returns:
        str: The identifier.
    """
    return self._draw(role)[role]


_GLOBAL_ALLOCATOR = FreshNameAllocator()


def get_allocator() -> FreshNameAllocator:
  """Returns the process-wide allocator."""
  return _GLOBAL_ALLOCATOR


def reset_allocator(start: int = 0, prefix: str = "_lm") -> FreshNameAllocator:
  """
  Replaces the process-wide allocator.

  Args:
      start: First counter value of the new allocator.
      prefix: Identifier prefix.

  Returns:
      FreshNameAllocator: The new instance.
  """
  global _GLOBAL_ALLOCATOR
  _GLOBAL_ALLOCATOR = FreshNameAllocator(prefix=prefix, start=start)
  return _GLOBAL_ALLOCATOR
