from __future__ import annotations

from pathlib import Path
import subprocess
import sys


MODELS = '''\
from typing import Protocol

__all__ = ["UserTrait"]


@db_view
class UserTrait(Protocol):
    def name(self) -> str: ...
'''

RUNTIME = '''\
class Views:
    def __init__(self):
        self.entries = []

    def add(self, interface, upcast, downcast):
        self.entries.append(interface)


class Database:
    def __init__(self):
        self._views = Views()

    def views_of_self(self):
        return self._views
'''


def _tool_root() -> Path:
    return Path(__file__).resolve().parents[2]


def _run(args: list[str], cwd: Path | None = None) -> subprocess.CompletedProcess[str]:
    run_cwd = _tool_root() if cwd is None else cwd
    return subprocess.run(
        [sys.executable, "dbview.py", *args],
        cwd=run_cwd,
        capture_output=True,
        text=True,
        check=False,
    )


def _write(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


def test_t_01_expand_writes_importable_module(tmp_path: Path) -> None:
    source = _write(tmp_path / "src" / "models.py", MODELS)
    _write(tmp_path / "out" / "viewrt.py", RUNTIME)
    output_dir = tmp_path / "out"

    result = _run(
        [str(source), "--output-dir", str(output_dir), "--runtime-module", "viewrt"]
    )

    assert result.returncode == 0, result.stdout + result.stderr
    assert "db_view expansion complete:" in result.stdout
    expanded = (output_dir / "models.py").read_text(encoding="utf-8")
    assert '__all__ = ["UserTrait", "__SalsaAddViewUserTrait__"]' in expanded

    check = subprocess.run(
        [
            sys.executable,
            "-c",
            "import models, viewrt\n"
            "db = viewrt.Database()\n"
            "db.__salsa_add_view_user_trait__()\n"
            "assert db.views_of_self().entries == [models.UserTrait]\n",
        ],
        cwd=output_dir,
        capture_output=True,
        text=True,
        check=False,
    )
    assert check.returncode == 0, check.stderr


def test_t_02_check_mode_reports_diagnostics_and_exits_1(tmp_path: Path) -> None:
    source = _write(
        tmp_path / "models.py", MODELS.replace("@db_view", '@db_view("extra")')
    )

    result = _run([str(source), "--check"])

    assert result.returncode == 1
    assert f"{source}:6:10: error[ARGUMENT_ERROR]:" in result.stdout
    assert "Output:     check only" in result.stdout


def test_t_03_missing_output_mode_is_a_config_error(tmp_path: Path) -> None:
    source = _write(tmp_path / "models.py", MODELS)

    result = _run([str(source)])

    assert result.returncode == 1
    assert "Config error [MISSING_OUTPUT]" in result.stdout
    assert "Hint:" in result.stdout


def test_t_04_unknown_flag_is_an_argparse_usage_error(tmp_path: Path) -> None:
    result = _run(["--not-a-flag", str(tmp_path / "models.py")])

    assert result.returncode == 2
    assert "usage:" in result.stderr


def test_t_05_expanded_diagnostic_raises_at_import(tmp_path: Path) -> None:
    source = _write(
        tmp_path / "src" / "broken.py", "@db_view\ndef helper():\n    pass\n"
    )
    output_dir = tmp_path / "out"

    result = _run([str(source), "--output-dir", str(output_dir)])

    assert result.returncode == 1
    check = subprocess.run(
        [sys.executable, "-c", "import broken"],
        cwd=output_dir,
        capture_output=True,
        text=True,
        check=False,
    )
    assert check.returncode != 0
    assert "SyntaxError" in check.stderr
    assert "expects a Protocol class declaration" in check.stderr
