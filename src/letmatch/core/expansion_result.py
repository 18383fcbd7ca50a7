"""
Data structures representing the output of the expansion pipeline.

This module defines the `ExpansionResult` Pydantic model, which encapsulates
the expanded code, the diagnostics encountered, and the execution trace.
"""

from typing import Any, Dict, List

from pydantic import BaseModel, Field

from letmatch.core.diagnostics import Diagnostic


class ExpansionResult(BaseModel):
  """
  Container for the results of an expansion job.
  """

  code: str = Field(default="", description="The expanded source code.")
  diagnostics: List[Diagnostic] = Field(default_factory=list, description="Problems found while expanding.")
  success: bool = Field(default=True, description="True if no diagnostic was reported.")
  trace_events: List[Dict[str, Any]] = Field(default_factory=list, description="Execution trace log data.")
  sites: int = Field(default=0, description="Number of top-level extended blocks found.")
  wrappers: int = Field(default=0, description="Number of escape wrappers emitted.")

  @property
  def has_errors(self) -> bool:
    """
    Check if the result contains any diagnostics.

    Returns:
        True if one or more diagnostics are present.
    """
    return len(self.diagnostics) > 0

  @property
  def errors(self) -> List[str]:
    """Rendered diagnostics, one line each."""
    return [d.render() for d in self.diagnostics]
