import json
from pathlib import Path

import pytest

from casebook.scoring import (
    CaseScore,
    ChoiceRecord,
    ScoringEngine,
    ScoringEntry,
    ScoringError,
    ScoringKey,
    extract_scoring_key,
    strip_scoring_data,
)

SAMPLE_CASE = Path(__file__).resolve().parents[1] / "cases" / "chest-pain.json"


def sample_key() -> ScoringKey:
    return ScoringKey.from_dict(
        {
            "n1": {
                "good": {"optimal": True, "points": 10, "xp": 15, "teaching": "Nice."},
                "bad": {"optimal": False, "points": -4, "xp": -80},
            }
        }
    )


def test_on_choice_accumulates_points_and_optimal_flags() -> None:
    engine = ScoringEngine(sample_key(), base_xp=50)
    engine.on_choice("n1", "good")
    engine.on_choice("n1", "bad")

    snapshot = engine.snapshot()
    assert snapshot.total_score == 6
    assert snapshot.optimal_choices == 1
    assert snapshot.total_choices == 2
    assert [record.choice_id for record in snapshot.history] == ["good", "bad"]


def test_unknown_choice_scores_as_neutral() -> None:
    engine = ScoringEngine(sample_key())
    record = engine.on_choice("elsewhere", "whatever")
    assert record == ChoiceRecord(node_id="elsewhere", choice_id="whatever")
    assert engine.total_score == 0


def test_xp_is_floored_at_zero() -> None:
    engine = ScoringEngine(sample_key(), base_xp=50)
    engine.on_choice("n1", "bad")
    assert engine.snapshot().xp_earned == 0


def test_finalize_requires_terminal_and_runs_once() -> None:
    engine = ScoringEngine(sample_key())
    engine.on_choice("n1", "good")
    with pytest.raises(ScoringError, match="terminal"):
        engine.finalize()

    engine.mark_terminal()
    score = engine.finalize()
    assert score.total_score == 10
    assert score.xp_earned == 65
    assert engine.finalized

    with pytest.raises(ScoringError, match="already"):
        engine.finalize()
    with pytest.raises(ScoringError):
        engine.on_choice("n1", "good")


def test_scoring_entry_from_dict_defaults_bad_fields() -> None:
    entry = ScoringEntry.from_dict({"optimal": "yes", "points": "ten", "xp": 2.0, "rationale": 3})
    assert entry == ScoringEntry(optimal=False, points=0, xp=2, rationale=None)


def test_case_score_from_dict_recovers_per_field() -> None:
    score = CaseScore.from_dict(
        {
            "totalScore": 42,
            "xpEarned": "lots",
            "history": [{"nodeId": "a", "choiceId": "b", "optimal": True}, "junk"],
        }
    )
    assert score.total_score == 42
    assert score.xp_earned == 0
    assert score.history == (ChoiceRecord(node_id="a", choice_id="b", optimal=True),)


def test_case_score_dict_shape_matches_storage() -> None:
    score = CaseScore(total_score=5, xp_earned=60, optimal_choices=1, total_choices=1,
                      history=(ChoiceRecord("n1", "good", True, 5, 10),))
    assert CaseScore.from_dict(score.to_dict()) == score


def test_extract_and_strip_scoring_data_from_authored_case() -> None:
    raw = json.loads(SAMPLE_CASE.read_text(encoding="utf-8"))

    key = extract_scoring_key(raw)
    stripped = strip_scoring_data(raw)

    assert key.lookup("history", "onset").optimal is True
    assert key.lookup("ecg", "observe").points == -5
    assert ("debrief", "anything") not in key
    for node in stripped["nodes"].values():
        for choice in node.get("choices", []):
            assert "scoring" not in choice
    # The authored copy is left untouched.
    assert "scoring" in raw["nodes"]["history"]["choices"][0]


def test_scoring_key_round_trips_through_dict() -> None:
    key = sample_key()
    rebuilt = ScoringKey.from_dict(key.to_dict())
    assert rebuilt.lookup("n1", "good") == key.lookup("n1", "good")
    assert len(rebuilt) == 2


def test_case_score_from_dict_ignores_non_finite_values() -> None:
    score = CaseScore.from_dict({"totalScore": float("nan"), "xpEarned": float("inf"), "totalChoices": 2})
    assert score.total_score == 0
    assert score.xp_earned == 0
    assert score.total_choices == 2


def test_extract_and_strip_skip_malformed_choice_lists() -> None:
    raw = {"nodes": {"a": {"choices": 5}, "b": {"choices": [{"id": "x", "scoring": {"points": 1}}]}}}
    assert len(extract_scoring_key(raw)) == 1
    assert strip_scoring_data(raw)["nodes"]["a"]["choices"] == 5
