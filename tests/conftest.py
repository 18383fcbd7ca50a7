"""
Pytest Configuration and Fixtures.

Includes:
- Syspath patching for local imports.
- Option-like value types used by behavioural tests.
- A loader that expands a module and executes it.
"""

import sys
import textwrap
from dataclasses import dataclass
from pathlib import Path

import pytest

# Add src to path so we can import 'letmatch' without installing it
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from letmatch.config import RuntimeConfig  # noqa: E402
from letmatch.core.engine import ExpansionEngine  # noqa: E402
from letmatch.core.tracer import reset_tracer  # noqa: E402


@dataclass
class Some:
  value: object


@dataclass
class Nothing:
  pass


@pytest.fixture(autouse=True)
def clean_tracer():
  """Isolates the process-wide tracer between tests."""
  reset_tracer()
  yield
  reset_tracer()


@pytest.fixture
def config() -> RuntimeConfig:
  """Config without the mypy pass, for tests that only need expansion."""
  return RuntimeConfig(check_exhaustiveness=False)


@pytest.fixture
def load(config):
  """
  Expands `source` (dedented), asserts success and executes the result.

  Returns:
      Callable returning `(namespace, result)`. The namespace holds `Some`
      and `Nothing` plus every name the module defines.
  """

  def _load(source: str, **settings):
    cfg = config.model_copy(update=settings) if settings else config
    result = ExpansionEngine(config=cfg).run(textwrap.dedent(source))
    assert result.success, result.errors
    namespace = {"Some": Some, "Nothing": Nothing}
    exec(compile(result.code, "<expanded>", "exec"), namespace)
    return namespace, result

  return _load
