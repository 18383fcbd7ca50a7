"""
letmatch Package.

Extended pattern-matching blocks for Python. A `do { ... }` block may bind
values with refutable patterns (`let P match expr else ...`) and leave early
with an escape (`^value`). The expansion engine lowers these blocks into
plain `match`, `if` and `while` statements.

Usage
-----

.. code-block:: python

    import letmatch

    source = '''
    def first_even(xs):
        return do {
            for x in xs {
                if x % 2 == 0 { ^x }
            }
            None
        }
    '''
    print(letmatch.expand(source, check=False))

Advanced Usage (Expansion Engine)
^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^

.. code-block:: python

    from letmatch import ExpansionEngine, RuntimeConfig

    engine = ExpansionEngine(config=RuntimeConfig(check_exhaustiveness=False))
    res = engine.run(source)
    if not res.success:
        print(res.errors)
"""

from typing import Optional

from letmatch.config import RuntimeConfig
from letmatch.core.engine import ExpansionEngine
from letmatch.core.expansion_result import ExpansionResult

__version__ = "0.1.0"


def expand(
  code: str,
  check: bool = True,
  keyword: Optional[str] = None,
  filename: str = "<string>",
) -> str:
  """
  Expands every extended block of a module.

  Convenience wrapper around `ExpansionEngine`.

  Args:
      code (str): Module source.
      check (bool): Run mypy to verify exhaustiveness of extended-lets.
      keyword (str, optional): Block keyword, defaults to `do`.
      filename (str): Name used in diagnostics.

  Returns:
      str: The expanded module.

  Raises:
      ValueError: If any diagnostic was reported.
  """
  settings = {"check_exhaustiveness": check}
  if keyword is not None:
    settings["block_keyword"] = keyword
  config = RuntimeConfig(**settings)

  result = ExpansionEngine(config=config).run(code, filename=filename)
  if not result.success:
    raise ValueError("Expansion failed:\n" + "\n".join(result.errors))
  return result.code


__all__ = [
  "ExpansionEngine",
  "ExpansionResult",
  "RuntimeConfig",
  "__version__",
  "expand",
]
