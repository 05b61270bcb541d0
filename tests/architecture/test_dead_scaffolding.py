"""
Dead scaffolding elimination.

Every public function, method and property defined in the LeadPay
packages must be referenced somewhere other than its own definition:
by runtime code, a script or a test.  Helpers nobody calls are deleted
rather than kept "just in case".

Checked statically via AST (definitions) and a word scan of the source
tree (references).
"""

import ast
import re
from collections import Counter
from pathlib import Path

ROOT = Path(__file__).resolve().parents[2]

PACKAGES = ("leadpay_kernel", "leadpay_config", "leadpay_services")
REFERENCE_ROOTS = PACKAGES + ("tests", "scripts")


def _python_files(roots) -> list[Path]:
    return sorted(path for root in roots for path in (ROOT / root).rglob("*.py"))


def _public_definitions() -> Counter:
    """name -> number of ``def`` statements with that name."""
    counts: Counter = Counter()
    for path in _python_files(PACKAGES):
        tree = ast.parse(path.read_text(), filename=str(path))
        for node in ast.walk(tree):
            if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)) and not node.name.startswith("_"):
                counts[node.name] += 1
    return counts


class TestNoUnreferencedDefinitions:
    def test_every_public_definition_is_referenced(self):
        source = "\n".join(path.read_text() for path in _python_files(REFERENCE_ROOTS))

        unreferenced = sorted(
            name
            for name, definitions in _public_definitions().items()
            if len(re.findall(rf"\b{re.escape(name)}\b", source)) <= definitions
        )

        assert not unreferenced, (
            "Public definitions with no caller, script or test:\n  "
            + "\n  ".join(unreferenced)
        )

    def test_engine_exposes_only_used_helpers(self):
        import leadpay_kernel.db.engine as engine

        for removed in ("get_session", "session_scope", "is_postgres"):
            assert not hasattr(engine, removed)
