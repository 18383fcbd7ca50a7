"""
Expansion Trace.

A flat, append-only log of what an expansion run did, nested by phase:

- `phase_start` / `phase_end` around Tokenize, Locate, Lower and Host Check.
- `block_lowered` for every boundary block (inline or through a wrapper).
- `wrapper_allocated` for every result slot / exit flag pair.
- `inspection` for exhaustiveness guard decisions.
- `analysis_warning` for sites left verbatim.

`letmatch expand --json-trace FILE` dumps `TraceLogger.export()`.
"""

import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class TraceEventType(str, Enum):
  PHASE_START = "phase_start"
  PHASE_END = "phase_end"
  BLOCK_LOWERED = "block_lowered"
  WRAPPER_ALLOCATED = "wrapper_allocated"
  ANALYSIS_WARNING = "analysis_warning"
  INSPECTION = "inspection"


@dataclass
class TraceEvent:
  id: str
  type: TraceEventType
  timestamp: float
  description: str
  parent_id: Optional[str] = None
  metadata: Dict[str, Any] = field(default_factory=dict)


class TraceLogger:
  """
  Collects trace events for one expansion run.

  The `ExpansionEngine` resets the process-wide logger at the start of each
  run and hands it to the `LoweringEngine`.
  """

  def __init__(self) -> None:
    self._events: List[TraceEvent] = []
    self._stack: List[str] = []

  def _record(
    self,
    kind: TraceEventType,
    description: str,
    metadata: Optional[Dict[str, Any]] = None,
    parent_id: Optional[str] = None,
  ) -> str:
    if parent_id is None and self._stack:
      parent_id = self._stack[-1]
    event = TraceEvent(
      id=uuid.uuid4().hex,
      type=kind,
      timestamp=time.time(),
      description=description,
      parent_id=parent_id,
      metadata=metadata or {},
    )
    self._events.append(event)
    return event.id

  def start_phase(self, name: str, detail: str = "") -> str:
    """
    Opens a phase. Events recorded until `end_phase` are its children.

    Args:
        name: Phase name, e.g. "Lower".
        detail: Free-form context (file name, site count).

    Returns:
        str: Id of the phase_start event.
    """
    phase_id = self._record(TraceEventType.PHASE_START, name, {"detail": detail})
    self._stack.append(phase_id)
    return phase_id

  def end_phase(self) -> None:
    if self._stack:
      phase_id = self._stack.pop()
      self._record(TraceEventType.PHASE_END, "End Phase", parent_id=phase_id)

  def log_block(self, location: str, wrapped: bool, sink: str) -> None:
    mode = "escape wrapper" if wrapped else "inline"
    self._record(
      TraceEventType.BLOCK_LOWERED,
      f"Lowered block at {location} ({mode})",
      {"location": location, "wrapped": wrapped, "sink": sink},
    )

  def log_wrapper(self, result_slot: str, loop_label: str) -> None:
    self._record(
      TraceEventType.WRAPPER_ALLOCATED,
      f"Allocated {result_slot} / {loop_label}",
      {"result_slot": result_slot, "loop_label": loop_label},
    )

  def log_warning(self, message: str) -> None:
    self._record(TraceEventType.ANALYSIS_WARNING, message, {"level": "warning"})

  def log_inspection(self, subject: str, outcome: str, detail: str = "") -> None:
    """Records a decision that produced no code of its own."""
    self._record(TraceEventType.INSPECTION, f"Inspecting '{subject}'", {"outcome": outcome, "detail": detail})

  def export(self) -> List[Dict[str, Any]]:
    return [asdict(e) for e in self._events]


_TRACER = TraceLogger()


def get_tracer() -> TraceLogger:
  return _TRACER


def reset_tracer() -> None:
  global _TRACER
  _TRACER = TraceLogger()
