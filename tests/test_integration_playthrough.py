import json
import random
from pathlib import Path

import pytest

from casebook.characters import load_characters
from casebook.engine import CaseSession
from casebook.manifest import load_manifest
from casebook.progress import ProgressTracker, completion_handler
from casebook.scoring import extract_scoring_key
from casebook.storage import FileStorage, PersistenceAdapter
from casebook.timers import ManualScheduler

REPO_ROOT = Path(__file__).resolve().parents[1]
CASE_PATH = REPO_ROOT / "cases" / "chest-pain.json"
CHARACTERS_PATH = REPO_ROOT / "cases" / "characters.json"


def load_scoring_key():
    with CASE_PATH.open("r", encoding="utf-8") as handle:
        return extract_scoring_key(json.load(handle))


def simulate_random_playthrough(session: CaseSession, scheduler: ManualScheduler, *, seed: int, max_steps: int = 200) -> str:
    rng = random.Random(seed)
    session.start()
    steps = 0
    while steps < max_steps:
        steps += 1
        if session.is_terminal:
            return session.current_node_id
        visible = session.available_choices()
        if visible:
            session.select_choice(rng.choice(visible).id)
            continue
        assert session.auto_advance_pending, f"No way out of node '{session.current_node_id}'."
        scheduler.advance(60_000)

    raise AssertionError(f"Playthrough exceeded {max_steps} steps without reaching a terminal node.")


@pytest.mark.parametrize("seed", range(8))
def test_random_playthrough_reaches_terminal(tmp_path: Path, seed: int) -> None:
    manifest = load_manifest(CASE_PATH)
    catalog = load_characters(CHARACTERS_PATH)
    tracker = ProgressTracker(PersistenceAdapter(FileStorage(tmp_path)))
    tracker.load()
    scheduler = ManualScheduler()
    session = CaseSession(
        manifest,
        load_scoring_key(),
        scheduler=scheduler,
        on_complete=completion_handler(tracker, catalog),
    )

    ending = simulate_random_playthrough(session, scheduler, seed=seed)

    assert ending == "debrief"
    assert tracker.is_case_completed(manifest.id)
    assert tracker.is_character_caught("stemi-sentinel")
    assert tracker.total_xp == tracker.get_case_result(manifest.id).score.xp_earned


def test_optimal_path_scores_full_marks(tmp_path: Path) -> None:
    manifest = load_manifest(CASE_PATH)
    scheduler = ManualScheduler()
    session = CaseSession(manifest, load_scoring_key(), scheduler=scheduler)
    session.start()
    scheduler.advance(4000)
    session.select_choice("onset")
    session.select_choice("cath-lab")

    score = session.finalize()
    assert score.total_score == 30
    assert score.xp_earned == 100
    assert score.optimal_choices == 2
    assert [record.choice_id for record in score.history] == ["onset", "cath-lab"]
    assert session.transitions[0] == {"from": "arrival", "to": "history", "choice": None}


def test_hesitating_at_the_ecg_takes_the_default_and_tracks_state() -> None:
    manifest = load_manifest(CASE_PATH)
    scheduler = ManualScheduler()
    session = CaseSession(manifest, load_scoring_key(), scheduler=scheduler)
    session.start()
    scheduler.advance(4000)
    session.select_choice("onset")
    scheduler.advance(30_000)

    view = session.view()
    assert session.current_node_id == "debrief"
    assert session.timeouts == ["ecg"]
    assert view.history == ("onset", "observe")
    assert view.visited == ("arrival", "history", "ecg", "debrief")
    assert view.cp_spent == 4
    assert view.cp_budget == 10
    assert view.rapport == 52
    assert [clue.id for clue in view.clues] == ["diaphoresis", "st-elevation", "sinus-tachy"]
    assert view.key_findings_found == len(manifest.key_finding_ids()) == 2
    assert session.finalize().total_score == 5
