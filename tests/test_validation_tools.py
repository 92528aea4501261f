import json
import subprocess
import sys
from pathlib import Path

from tools import list_unreachable
from tools.softlock import analyze_dead_ends, build_graph

REPO_ROOT = Path(__file__).resolve().parents[1]


def make_case(nodes: dict, start: str = "start") -> dict:
    return {
        "id": "tool-case",
        "title": "Tool case",
        "languageLevel": "B1",
        "startNodeId": start,
        "nodes": nodes,
    }


def write_case(tmp_path: Path, case: dict) -> Path:
    path = tmp_path / "case.json"
    path.write_text(json.dumps(case), encoding="utf-8")
    return path


def run_validate(*paths: Path) -> subprocess.CompletedProcess:
    return subprocess.run(
        [sys.executable, str(REPO_ROOT / "tools" / "validate.py"), *map(str, paths)],
        capture_output=True,
        text=True,
        check=False,
    )


def test_validate_tool_accepts_sample_case() -> None:
    result = run_validate(REPO_ROOT / "cases" / "chest-pain.json")
    assert result.returncode == 0, result.stdout
    assert "Validation passed" in result.stdout


def test_validate_tool_flags_dangling_target(tmp_path: Path) -> None:
    case = make_case(
        {
            "start": {"choices": [{"id": "go", "label": "Go", "next": "nowhere"}]},
        }
    )
    result = run_validate(write_case(tmp_path, case))
    assert result.returncode == 1
    assert "Validation failed" in result.stdout
    assert "targets unknown node 'nowhere'" in result.stdout


def test_validate_tool_ignores_scoring_blocks_but_warns_on_loops(tmp_path: Path) -> None:
    case = make_case(
        {
            "start": {
                "choices": [
                    {"id": "loop", "label": "Loop", "next": "spin", "scoring": {"points": 1}},
                    {"id": "end", "label": "End", "next": "end"},
                ]
            },
            "spin": {"choices": [{"id": "again", "label": "Again", "next": "spin"}]},
            "end": {},
        }
    )
    result = run_validate(write_case(tmp_path, case))
    assert result.returncode == 0, result.stdout
    assert "Dead-end warnings" in result.stdout
    assert "nodes.spin" in result.stdout


def test_analyze_dead_ends_reports_missing_terminal() -> None:
    case = make_case(
        {
            "start": {"autoAdvance": {"next": "other", "afterMs": 10}},
            "other": {"choices": [{"id": "back", "label": "Back", "next": "start"}]},
        }
    )
    warnings = analyze_dead_ends(case)
    assert any("no terminal node" in warning for warning in warnings)
    assert len(warnings) == 3


def test_build_graph_follows_auto_advance_and_drops_missing_targets() -> None:
    graph = build_graph(
        {
            "a": {"autoAdvance": {"next": "b"}, "choices": [{"id": "x", "next": "missing"}]},
            "b": {},
        }
    )
    assert graph == {"a": ["b"], "b": []}


def test_find_unreachable_lists_orphans() -> None:
    case = make_case(
        {
            "start": {"choices": [{"id": "go", "label": "Go", "next": "end"}]},
            "end": {},
            "orphan": {"choices": [{"id": "go", "label": "Go", "next": "end"}]},
        }
    )
    assert list_unreachable.find_unreachable(case) == ["orphan"]


def test_sample_case_has_no_unreachable_nodes() -> None:
    data = list_unreachable.load_case(list_unreachable.DEFAULT_CASE_PATH)
    assert list_unreachable.find_unreachable(data) == []
    assert analyze_dead_ends(data) == []


def test_validate_tool_reports_non_list_choices(tmp_path: Path) -> None:
    case = make_case({"start": {"choices": 5}})
    result = run_validate(write_case(tmp_path, case))
    assert result.returncode == 1
    assert "choices must be provided as a list" in result.stdout
    assert "Traceback" not in result.stderr


def test_validate_tool_counts_scored_choices() -> None:
    result = run_validate(REPO_ROOT / "cases" / "chest-pain.json")
    assert "(5 scored choice(s))" in result.stdout
