"""
Tests for Centralized Logging Utility and Injection Mechanics.

Verifies:
1. Singleton Proxy correctness.
2. Injection capabilities (`set_console`).
3. Standard logging wrappers, including the custom SUCCESS level.
"""

import logging

import pytest
from rich.console import Console
from rich.logging import RichHandler

from letmatch.utils.console import (
  SUCCESS_LEVEL_NUM,
  console,
  get_console,
  logger,
  log_error,
  log_info,
  log_success,
  log_warning,
  reset_console,
  set_console,
)


@pytest.fixture(autouse=True)
def cleanup_console():
  """Ensures console is reset to stdout after every test."""
  reset_console()
  yield
  reset_console()


def test_console_singleton_proxy():
  assert callable(console.print)
  assert hasattr(console, "export_text")
  assert isinstance(get_console(), Console)


def test_custom_console_injection():
  """
  Scenario: A capturing console is injected.
  Expectation: Log wrappers write into it.
  """
  capture = Console(record=True, width=120)
  set_console(capture)

  log_info("Captured Log")
  log_warning("Careful")
  log_success("Done")

  output = capture.export_text()
  assert "Captured Log" in output
  assert "Careful" in output
  assert "Done" in output
  assert "✅" in output


def test_single_rich_handler_after_swaps():
  set_console(Console())
  set_console(Console())
  handlers = [h for h in logger.handlers if isinstance(h, RichHandler)]
  assert len(handlers) == 1
  assert handlers[0].console is get_console()


def test_reset_functionality():
  original = get_console()
  temp = Console()
  set_console(temp)
  assert get_console() is temp

  reset_console()
  current = get_console()
  assert current is not temp
  assert current is not original


def test_success_level_registered():
  assert logging.getLevelName(SUCCESS_LEVEL_NUM) == "SUCCESS"
  assert logger.propagate is False


def test_logging_wrappers_format(capsys):
  log_info("InfoText")
  log_error("ErrorText")

  out = capsys.readouterr().out
  assert "InfoText" in out
  assert "ErrorText" in out
  assert "❌" in out


def test_proxy_getattr_delegation():
  width = console.width
  assert isinstance(width, int)
  assert width > 0
