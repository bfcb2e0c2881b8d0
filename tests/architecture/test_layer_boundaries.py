"""
Layer boundary tests.

1. billing_kernel/** may NOT import billing_engines, billing_services
   or billing_config. The kernel never depends upward.

2. billing_engines/** are pure: no database, no services, no config.

3. billing_config/** builds engines but never touches the database
   layer or the services.

These tests read source code via AST.
"""

import ast
import glob
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[2]


def _python_files(package: str) -> list[Path]:
    return sorted(Path(p) for p in glob.glob(f"{ROOT / package}/**/*.py", recursive=True))


def _extract_imports(filepath: Path) -> list[tuple[int, str]]:
    """Extract (line_number, module_string) for all imports in a file."""
    tree = ast.parse(filepath.read_text(), filename=str(filepath))

    results: list[tuple[int, str]] = []
    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            for alias in node.names:
                results.append((node.lineno, alias.name))
        elif isinstance(node, ast.ImportFrom):
            if node.module:
                results.append((node.lineno, node.module))
    return results


def _violations(package: str, forbidden: tuple[str, ...]) -> list[str]:
    found: list[str] = []
    for filepath in _python_files(package):
        for lineno, module in _extract_imports(filepath):
            for prefix in forbidden:
                if module == prefix or module.startswith(f"{prefix}."):
                    found.append(f"  {filepath.relative_to(ROOT)}:{lineno} imports '{module}'")
    return found


@pytest.mark.parametrize(
    "package, forbidden",
    [
        ("billing_kernel", ("billing_engines", "billing_services", "billing_config")),
        (
            "billing_engines",
            ("billing_services", "billing_config", "billing_kernel.db",
             "billing_kernel.models", "billing_kernel.services", "sqlalchemy"),
        ),
        ("billing_config", ("billing_services", "billing_kernel.db", "sqlalchemy")),
    ],
)
def test_no_forbidden_imports(package, forbidden):
    assert _python_files(package), f"no sources found for {package}"

    violations = _violations(package, forbidden)

    assert not violations, (
        f"Layer boundary violation in {package}/:\n" + "\n".join(violations)
    )
