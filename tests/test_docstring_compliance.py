from __future__ import annotations

import ast
from pathlib import Path
from typing import List

_SRC = Path(__file__).resolve().parents[1] / "src" / "vm_coverage"

_DEF_NODES = (ast.ClassDef, ast.FunctionDef, ast.AsyncFunctionDef)


def _undocumented(py_path: Path) -> List[str]:
    tree = ast.parse(py_path.read_text(encoding="utf-8"), filename=str(py_path))
    rel = py_path.relative_to(_SRC.parent)
    return [
        f"{rel}:{node.lineno} {node.name}"
        for node in ast.walk(tree)
        if isinstance(node, _DEF_NODES) and ast.get_docstring(node) is None
    ]


def test_every_class_and_function_under_src_has_a_docstring() -> None:
    """
    Docstring 护栏：`src/vm_coverage` 下每个 class/def/async def（含嵌套定义）都必须有 docstring。
    """

    assert _SRC.is_dir(), f"package source not found: {_SRC}"

    missing: List[str] = []
    for py_path in sorted(_SRC.rglob("*.py")):
        missing.extend(_undocumented(py_path))

    assert not missing, "missing docstrings:\n" + "\n".join(f"- {m}" for m in missing)
