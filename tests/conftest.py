import sys
import types
from collections.abc import Callable
from pathlib import Path

import pytest

GENERATOR_DIR = Path(__file__).resolve().parent.parent
if str(GENERATOR_DIR) not in sys.path:
    sys.path.insert(0, str(GENERATOR_DIR))

import dbview  # noqa: E402

TEST_RUNTIME_MODULE = "dbview_test_runtime"


class ViewsRegistry:
    def __init__(self) -> None:
        self.entries: list[tuple[type, Callable, Callable]] = []

    def add(self, interface: type, upcast: Callable, downcast: Callable) -> None:
        self.entries.append((interface, upcast, downcast))


class Database:
    def __init__(self) -> None:
        self._views = ViewsRegistry()

    def views_of_self(self) -> ViewsRegistry:
        return self._views


@pytest.fixture
def runtime_module(monkeypatch: pytest.MonkeyPatch) -> types.ModuleType:
    # A fresh Database class per test: blanket implementations install
    # methods on it.
    module = types.ModuleType(TEST_RUNTIME_MODULE)
    module.ViewsRegistry = ViewsRegistry
    module.Database = type("Database", (Database,), {})
    monkeypatch.setitem(sys.modules, TEST_RUNTIME_MODULE, module)
    return module


@pytest.fixture
def test_config() -> dbview.ExpandConfig:
    return dbview.ExpandConfig(runtime_module=TEST_RUNTIME_MODULE)


@pytest.fixture
def exec_source() -> Callable[[str], dict[str, object]]:
    def _exec_source(code: str) -> dict[str, object]:
        namespace: dict[str, object] = {"__name__": "expanded"}
        exec(compile(code, "expanded.py", "exec"), namespace)
        return namespace

    return _exec_source


@pytest.fixture
def make_invocation() -> Callable[..., dbview.Invocation]:
    def _make_invocation(
        item: str,
        *,
        args: str = "",
        filename: str = "models.py",
        args_span: dbview.Span = dbview.Span(1, 1),
        item_span: dbview.Span = dbview.Span(1, 1),
        visible_names: frozenset[str] = frozenset(),
    ) -> dbview.Invocation:
        return dbview.Invocation(
            args=args,
            item=item,
            filename=filename,
            args_span=args_span,
            item_span=item_span,
            visible_names=visible_names,
        )

    return _make_invocation


@pytest.fixture
def write_source(tmp_path: Path) -> Callable[[str, str], Path]:
    def _write_source(name: str, source: str) -> Path:
        path = tmp_path / "src" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(source, encoding="utf-8")
        return path

    return _write_source
