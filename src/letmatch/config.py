"""
Runtime Configuration Store.

Settings are resolved in three layers: field defaults, the `[tool.letmatch]`
table of the nearest `pyproject.toml`, then explicit (CLI) overrides.
"""

import keyword
import tomllib
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, field_validator


class RuntimeConfig(BaseModel):
  """
  Global configuration container for the expansion engine.
  """

  block_keyword: str = Field("do", description="Keyword introducing an extended block (`do { ... }`).")
  hidden_prefix: str = Field("_lm", description="Prefix of every generated identifier.")
  indent: str = Field("    ", description="Indentation unit used for generated nested suites.")
  emit_exhaustiveness_guard: bool = Field(
    True,
    description="Append an `assert_never` catch-all case to matches without an irrefutable case.",
  )
  check_exhaustiveness: bool = Field(True, description="Run mypy over the expanded module.")
  checker_args: List[str] = Field(default_factory=list, description="Extra command line flags for mypy.")

  @field_validator("block_keyword")
  @classmethod
  def validate_keyword(cls, v: str) -> str:
    """
    Ensures the block keyword can be written where a statement starts.

    Raises:
        ValueError: If it is not an identifier or is reserved by Python.
    """
    v_clean = v.strip()
    if not v_clean.isidentifier() or keyword.iskeyword(v_clean):
      raise ValueError(f"Invalid block keyword: '{v_clean}'. Must be a non-reserved identifier.")
    return v_clean

  @field_validator("hidden_prefix")
  @classmethod
  def validate_prefix(cls, v: str) -> str:
    if not v.isidentifier() or keyword.iskeyword(v):
      raise ValueError(f"Invalid hidden name prefix: '{v}'.")
    return v

  @field_validator("indent")
  @classmethod
  def validate_indent(cls, v: str) -> str:
    if not v or v.strip(" \t"):
      raise ValueError("Indent must be a non-empty run of spaces or tabs.")
    return v

  @classmethod
  def load(
    cls,
    block_keyword: Optional[str] = None,
    check_exhaustiveness: Optional[bool] = None,
    emit_exhaustiveness_guard: Optional[bool] = None,
    checker_args: Optional[List[str]] = None,
    search_path: Optional[Path] = None,
  ) -> "RuntimeConfig":
    """
    Loads configuration from pyproject.toml and overrides with CLI arguments.

    Args:
        block_keyword (Optional[str]): Override for the block keyword.
        check_exhaustiveness (Optional[bool]): Override for running mypy.
        emit_exhaustiveness_guard (Optional[bool]): Override for the catch-all case.
        checker_args (Optional[List[str]]): Extra mypy flags, appended to the TOML ones.
        search_path (Optional[Path]): Directory to start searching for TOML config.

    Returns:
        RuntimeConfig: The fully resolved configuration object.
    """
    start_dir = search_path or Path.cwd()
    toml_config, _ = _load_toml_settings(start_dir)

    settings: Dict[str, Any] = {k: v for k, v in toml_config.items() if k in cls.model_fields}

    if block_keyword is not None:
      settings["block_keyword"] = block_keyword
    if check_exhaustiveness is not None:
      settings["check_exhaustiveness"] = check_exhaustiveness
    if emit_exhaustiveness_guard is not None:
      settings["emit_exhaustiveness_guard"] = emit_exhaustiveness_guard
    if checker_args:
      settings["checker_args"] = [*settings.get("checker_args", []), *checker_args]

    return cls(**settings)


def _load_toml_settings(start_path: Path) -> Tuple[Dict[str, Any], Optional[Path]]:
  """
  Searches parents for 'pyproject.toml' and extracts the `[tool.letmatch]` table.

  Args:
      start_path (Path): Directory to start search from.

  Returns:
      Tuple[Dict, Optional[Path]]: The config dict and the directory it was found in.
  """
  current = start_path.resolve()

  for parent in [current, *current.parents]:
    toml_path = parent / "pyproject.toml"
    if toml_path.exists() and toml_path.is_file():
      try:
        with open(toml_path, "rb") as f:
          data = tomllib.load(f)
      except (OSError, tomllib.TOMLDecodeError):
        return {}, None

      tool_section = data.get("tool", {})
      return tool_section.get("letmatch", {}), parent

  return {}, None
