"""
Rendering of Generated Nodes.

Converts detached LibCST nodes (built by the lowering engine, never part of
a parsed module) into source text at a given indentation.
"""

from typing import List

import libcst as cst

# A dummy module used as a context to render detached nodes.
_RENDER_CTX = cst.parse_module("")


def capture_node_source(node: cst.CSTNode) -> str:
  """
  Renders a LibCST node into its Python source code.

  Args:
      node: The CST node to serialise.

  Returns:
      str: The Python code string.
  """
  return _RENDER_CTX.code_for_node(node)


def render_statements(stmts: List[cst.BaseStatement], base_indent: str = "", indent: str = "    ") -> str:
  """
  Renders statements as lines starting at `base_indent`.

  The statements are placed inside a throwaway `if True:` suite whose
  indentation is `base_indent`; the header line is then dropped.

  Args:
      stmts: Statements to render.
      base_indent: Leading whitespace of the first level.
      indent: Indentation unit of nested suites.

  Returns:
      str: The rendered lines, ending with a newline.
  """
  body = stmts or [cst.SimpleStatementLine(body=[cst.Pass()])]
  if not base_indent:
    return cst.Module(body=body, default_indent=indent).code

  holder = cst.If(test=cst.Name("True"), body=cst.IndentedBlock(body=body, indent=base_indent))
  code = cst.Module(body=[holder], default_indent=indent).code
  return code.split("\n", 1)[1]
