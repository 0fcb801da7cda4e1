from __future__ import annotations

from pathlib import Path

import pytest

import dbview


def _diagnostic(line: int = 1) -> dbview.Diagnostic:
    return dbview.Diagnostic(
        kind="SYNTAX_ERROR",
        message="`@db_view` expects a Protocol class declaration, found a statement",
        filename="models.py",
        span=dbview.Span(line, 1),
    )


def _file_result(
    name: str,
    expanded: tuple[str, ...] = (),
    diagnostics: tuple[dbview.Diagnostic, ...] = (),
) -> dbview.FileExpansionResult:
    return dbview.FileExpansionResult(
        source=Path("src") / name,
        expanded=expanded,
        diagnostics=diagnostics,
        written=None,
    )


def _summary(*files: dbview.FileExpansionResult, output_label: str = "build") -> dbview.RunSummary:
    return dbview.RunSummary(
        runtime_module="salsa",
        directive="db_view",
        output_label=output_label,
        files=files,
    )


def test_t_01_summary_counts_sum_over_files() -> None:
    summary = _summary(
        _file_result("a.py", expanded=("UserTrait", "OtherTrait")),
        _file_result("b.py", expanded=("Views",), diagnostics=(_diagnostic(),)),
    )

    assert summary.expanded_count == 3
    assert summary.diagnostic_count == 1


@pytest.mark.parametrize(
    ("count", "expected"),
    [(0, "0 files"), (1, "1 file"), (2, "2 files")],
)
def test_t_02_plural_uses_singular_only_for_one(count: int, expected: str) -> None:
    assert dbview._plural(count, "file") == expected


def test_t_03_format_run_summary_emits_full_section_skeleton_in_order() -> None:
    summary = _summary(
        _file_result("models.py", expanded=("UserTrait",)),
        _file_result("views.py", diagnostics=(_diagnostic(3), _diagnostic(9))),
    )

    assert dbview.format_run_summary(summary) == (
        "db_view expansion complete:\n"
        "\n"
        "  Runtime:    salsa\n"
        "  Directive:  @db_view\n"
        "  Output:     build\n"
        "\n"
        "  Files:\n"
        "    models.py                    1 declaration expanded, 0 diagnostics\n"
        "    views.py                     0 declarations expanded, 2 diagnostics\n"
        "\n"
        "  Total: 1 declaration expanded, 2 diagnostics across 2 files\n"
    )


def test_t_04_format_run_summary_preserves_input_file_order() -> None:
    summary = _summary(_file_result("z.py"), _file_result("a.py"))

    output = dbview.format_run_summary(summary)

    assert output.index("z.py") < output.index("a.py")


def test_t_05_format_run_summary_shows_check_only_label() -> None:
    output = dbview.format_run_summary(_summary(output_label="check only"))

    assert "  Output:     check only\n" in output
    assert "  Total: 0 declarations expanded, 0 diagnostics across 0 files\n" in output


def test_t_06_format_run_summary_is_deterministic_and_single_newline_terminated() -> None:
    summary = _summary(_file_result("models.py", expanded=("UserTrait",)))

    first = dbview.format_run_summary(summary)
    second = dbview.format_run_summary(summary)

    assert first == second
    assert first.endswith("\n")
    assert not first.endswith("\n\n")


def test_t_07_print_run_summary_prints_formatter_output_once(
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    sentinel = "summary text\n"
    monkeypatch.setattr(dbview, "format_run_summary", lambda _summary: sentinel)

    dbview.print_run_summary(_summary())

    assert capsys.readouterr().out == sentinel
