"""File for tests."""

import io
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest
import yaml

from assembler import assemble
from processor import ControlUnit, build_control_unit


def pytest_configure(config: Any) -> None:
    """Configure the tests."""
    config.addinivalue_line(
        "markers",
        "golden_test(pattern): parameterize test with YAML files matching pattern",
    )


def _iter_marker_patterns(node: Any) -> Iterator[str]:
    """Yield pattern strings from golden_test markers on `node`."""
    for m in node.iter_markers(name="golden_test"):
        if m.args:
            yield m.args[0]
        else:
            yield "golden/*.yaml"


def load_golden_record(p: Path) -> dict[str, Any]:
    """Load one golden YAML record; a broken file becomes an error record."""
    try:
        with p.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        data = {"__yaml_load_error__": str(e)}
    if not isinstance(data, dict):
        data = {"__yaml_load_error__": f"record is {type(data).__name__}, not a mapping"}
    data.setdefault("__path__", str(p))
    return data


def pytest_generate_tests(metafunc: Any) -> None:
    """Generate tests (parametrization) from YAML golden files."""
    if "golden" not in metafunc.fixturenames:
        return

    patterns: list[str] = list(_iter_marker_patterns(metafunc.definition))
    if not patterns:
        patterns = ["golden/*.yaml"]

    root = Path(metafunc.config.rootpath)

    files: list[Path] = []
    for pat in patterns:
        files.extend(sorted(root.glob(pat)))

    params: list[Any] = []
    ids: list[str] = []
    for p in files:
        params.append(load_golden_record(p))
        ids.append(p.stem)

    metafunc.parametrize("golden", params, ids=ids)


@pytest.fixture
def make_cu() -> Callable[..., tuple[ControlUnit, io.StringIO, io.StringIO]]:
    """Build a ControlUnit for assembler source with in-memory console streams.

    `stdin` is the interactive input text; returns (cu, stdout, notices).
    """

    def _make(source: str, stdin: str = "", config: dict[str, Any] | None = None) -> Any:
        out = io.StringIO()
        notices = io.StringIO()
        cu = build_control_unit(
            assemble(source),
            config or {},
            reader=io.StringIO(stdin).readline,
            writer=out,
            notices=notices,
        )
        return cu, out, notices

    return _make
