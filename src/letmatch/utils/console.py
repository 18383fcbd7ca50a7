"""
Console Output.

All user-facing output goes through the `letmatch` logger, rendered by a
`rich.logging.RichHandler`. The handler writes to a swappable Rich console:
tests and embedding applications call `set_console` to capture output and
`reset_console` to return to stdout.

Attributes:
    console: Stable handle to the active Rich console. Attribute access is
        forwarded, so `console.print(...)` always reaches the current backend.
    logger: The package logger.
"""

import logging
from typing import Any, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.theme import Theme

SUCCESS_LEVEL_NUM = 25
logging.addLevelName(SUCCESS_LEVEL_NUM, "SUCCESS")

LOGGER_NAME = "letmatch"
logger = logging.getLogger(LOGGER_NAME)

_STYLES = Theme(
  {
    "logging.level.success": "bold green",
    "path": "bold blue",
    "code": "magenta",
  }
)


def _new_console() -> Console:
  return Console(theme=_STYLES)


class _ConsoleHandle:
  """
  Forwards to the current Rich console and keeps the logger bound to it.
  """

  def __init__(self) -> None:
    self._active: Optional[Console] = None
    self._handler: Optional[RichHandler] = None
    self.bind(_new_console())

  def bind(self, target: Console) -> None:
    """
    Makes `target` the destination of printing and logging.

    Args:
        target: The Rich console to write to.
    """
    if self._handler is not None:
      logger.removeHandler(self._handler)
    self._active = target
    self._handler = RichHandler(
      console=target,
      show_time=False,
      show_path=False,
      markup=True,
      rich_tracebacks=True,
    )
    logger.addHandler(self._handler)
    logger.setLevel(logging.INFO)
    logger.propagate = False

  @property
  def active(self) -> Console:
    return self._active

  def __getattr__(self, name: str) -> Any:
    return getattr(self._active, name)


console = _ConsoleHandle()


def set_console(target: Console) -> None:
  """Routes all output to `target` (e.g. a `Console(record=True)` in tests)."""
  console.bind(target)


def reset_console() -> None:
  console.bind(_new_console())


def get_console() -> Console:
  return console.active


def log_info(msg: str) -> None:
  logger.info(msg)


def log_success(msg: str) -> None:
  logger.log(SUCCESS_LEVEL_NUM, f"✅ {msg}")


def log_warning(msg: str) -> None:
  logger.warning(f"⚠️  {msg}")


def log_error(msg: str) -> None:
  """
  Logs a failure line.

  Args:
      msg: Message text. Rich markup is interpreted, so diagnostics that may
          contain `[...]` must be escaped by the caller.
  """
  logger.error(f"❌ {msg}")
