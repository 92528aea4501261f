import json
from pathlib import Path

import pytest

from casebook.exam_chain import (
    ChainPlayer,
    SegmentProgressTracker,
    parse_exam_chain,
    sanitize_segment_progress,
    validate_exam_chain,
)
from casebook.storage import MemoryStorage, PersistenceAdapter

REPO_ROOT = Path(__file__).resolve().parents[1]
CHAIN_PATH = REPO_ROOT / "cases" / "exams" / "cardiac.json"


@pytest.fixture
def chain():
    return parse_exam_chain(json.loads(CHAIN_PATH.read_text(encoding="utf-8")))


def test_sample_chain_parses(chain) -> None:
    assert chain.exam_type == "cardiac"
    assert [segment.id for segment in chain.segments] == ["inspection", "palpation", "auscultation"]
    assert chain.segments[0].teaser is True
    assert chain.segments[1].source_start_time == 12.5
    assert chain.segments[2].poster is None


def test_validate_exam_chain_reports_problems() -> None:
    errors = validate_exam_chain(
        {
            "examType": "",
            "examLabel": "Lungs",
            "segments": [{"id": "a", "label": "A", "src": "a.mp4"}, {"id": "a", "label": "B"}],
        }
    )
    assert any("examType" in err for err in errors)
    assert any("duplicate segment id 'a'" in err for err in errors)
    assert any("'src'" in err for err in errors)
    with pytest.raises(ValueError):
        parse_exam_chain({"examType": "x"})


def test_player_walks_chain_and_reports_completion(chain) -> None:
    watched = []
    finished = []
    player = ChainPlayer(
        chain,
        on_segment_complete=watched.append,
        on_chain_complete=lambda: finished.append(True),
    )

    assert player.complete_current().id == "palpation"
    assert player.progress_percent == 33
    assert player.complete_current().id == "auscultation"
    assert player.is_last_segment
    assert player.complete_current() is None

    assert watched == ["inspection", "palpation", "auscultation"]
    assert finished == [True]
    assert player.finished
    assert player.progress_percent == 100


def test_player_can_jump_to_a_segment(chain) -> None:
    player = ChainPlayer(chain, completed=["inspection"])
    assert player.select_segment("auscultation").id == "auscultation"
    assert player.progress_percent == 33
    with pytest.raises(KeyError):
        player.select_segment("missing")


def test_segment_progress_is_saved_per_exam() -> None:
    storage = MemoryStorage()
    tracker = SegmentProgressTracker(PersistenceAdapter(storage), "cardiac", clock=lambda: "t1")
    tracker.save_segment_progress("inspection")
    tracker.save_segment_progress("palpation")
    tracker.save_segment_progress("inspection")

    stored = json.loads(storage.get("cs-progress-cardiac"))
    assert stored["completedSegments"] == ["inspection", "palpation"]
    assert stored["lastSegmentId"] == "inspection"

    reloaded = SegmentProgressTracker(PersistenceAdapter(storage), "cardiac", clock=lambda: "t2")
    assert reloaded.load().completed_segments == ("inspection", "palpation")
    assert reloaded.reset_progress().completed_segments == ()
    assert json.loads(storage.get("cs-progress-cardiac"))["completedSegments"] == []


def test_sanitize_segment_progress_tolerates_junk() -> None:
    progress = sanitize_segment_progress(
        {"completedSegments": ["a", 3, "a", "b"], "lastSegmentId": 9}, now="now"
    )
    assert progress.completed_segments == ("a", "b")
    assert progress.last_segment_id is None
    assert progress.updated_at == "now"
    assert sanitize_segment_progress("broken", now="now").completed_segments == ()
