"""Player profile: completed cases, total XP and caught characters.

Everything lives in one stored blob so the case results and the XP total are
always written together. The update rules are pure functions over
``PlayerProfile``; ``ProgressTracker`` only adds load/save around them.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional

from .characters import CharacterCatalog, CollectionStats
from .profile_migrations import (
    PROFILE_SCHEMA_VERSION,
    ProfileMigrationError,
    merge_legacy_payloads,
    migrate_profile_payload,
)
from .scoring import CaseScore
from .settings import EngineSettings
from .storage import PersistenceAdapter, open_storage

logger = logging.getLogger("casebook.progress")

STORAGE_KEY = "player-profile"
OLD_PROGRESS_KEY = "clinical-case-progress"
OLD_COLLECTION_KEY = "character-collection"

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _timestamp(clock: Clock) -> str:
    return clock().isoformat()


def _as_number(value: Any, default: float = 0) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    if not math.isfinite(value):
        return default
    return value


@dataclass(frozen=True)
class CaseResult:
    score: CaseScore
    completed_at: str

    def to_dict(self) -> Dict[str, Any]:
        return {"score": self.score.to_dict(), "completedAt": self.completed_at}


@dataclass(frozen=True)
class CaughtCharacter:
    caught_at: str
    case_score: float
    xp_earned: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "caughtAt": self.caught_at,
            "caseScore": self.case_score,
            "xpEarned": self.xp_earned,
        }


@dataclass(frozen=True)
class PlayerProfile:
    completed_cases: Mapping[str, CaseResult] = field(default_factory=dict)
    total_xp: int = 0
    characters: Mapping[str, CaughtCharacter] = field(default_factory=dict)
    updated_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": PROFILE_SCHEMA_VERSION,
            "completedCases": {
                case_id: result.to_dict() for case_id, result in self.completed_cases.items()
            },
            "totalXp": self.total_xp,
            "characters": {
                character_id: caught.to_dict() for character_id, caught in self.characters.items()
            },
            "updatedAt": self.updated_at,
        }


def _sanitize_case_result(raw: Any, fallback_time: str) -> Optional[CaseResult]:
    if not isinstance(raw, Mapping):
        return None
    completed_at = raw.get("completedAt")
    return CaseResult(
        score=CaseScore.from_dict(raw.get("score")),
        completed_at=completed_at if isinstance(completed_at, str) else fallback_time,
    )


def _sanitize_caught(raw: Any, fallback_time: str) -> Optional[CaughtCharacter]:
    if not isinstance(raw, Mapping):
        return None
    caught_at = raw.get("caughtAt")
    xp = raw.get("xpEarned")
    return CaughtCharacter(
        caught_at=caught_at if isinstance(caught_at, str) else fallback_time,
        case_score=_as_number(raw.get("caseScore")),
        xp_earned=int(_as_number(xp)),
    )


def sanitize_profile(raw: Any, *, clock: Clock = utc_now) -> PlayerProfile:
    """Build a profile from stored data, defaulting each malformed field on its own."""
    now = _timestamp(clock)
    if not isinstance(raw, Mapping):
        return PlayerProfile(updated_at=now)

    completed: Dict[str, CaseResult] = {}
    raw_cases = raw.get("completedCases")
    if isinstance(raw_cases, Mapping):
        for case_id, entry in raw_cases.items():
            result = _sanitize_case_result(entry, now)
            if isinstance(case_id, str) and result is not None:
                completed[case_id] = result

    characters: Dict[str, CaughtCharacter] = {}
    raw_characters = raw.get("characters")
    if isinstance(raw_characters, Mapping):
        for character_id, entry in raw_characters.items():
            caught = _sanitize_caught(entry, now)
            if isinstance(character_id, str) and caught is not None:
                characters[character_id] = caught

    updated_at = raw.get("updatedAt")
    return PlayerProfile(
        completed_cases=completed,
        total_xp=int(_as_number(raw.get("totalXp"))),
        characters=characters,
        updated_at=updated_at if isinstance(updated_at, str) else now,
    )


# ---------------------------------------------------------------------------
# Pure update rules
# ---------------------------------------------------------------------------

def apply_case_completion(
    profile: PlayerProfile, case_id: str, score: CaseScore, *, now: str
) -> PlayerProfile:
    """Keep the best attempt per case and move ``total_xp`` by the XP difference.

    A new attempt replaces the stored one only when its ``total_score`` is
    strictly greater; otherwise the XP delta is zero.
    """
    existing = profile.completed_cases.get(case_id)
    should_update = existing is None or score.total_score > existing.score.total_score
    if not should_update:
        return replace(profile, updated_at=now)

    previous_xp = existing.score.xp_earned if existing is not None else 0
    xp_delta = score.xp_earned - previous_xp
    completed = dict(profile.completed_cases)
    completed[case_id] = CaseResult(score=score, completed_at=now)
    return replace(
        profile,
        completed_cases=completed,
        total_xp=profile.total_xp + xp_delta,
        updated_at=now,
    )


def apply_case_reset(profile: PlayerProfile, case_id: str, *, now: str) -> PlayerProfile:
    completed = dict(profile.completed_cases)
    removed = completed.pop(case_id, None)
    xp_delta = removed.score.xp_earned if removed is not None else 0
    return replace(
        profile,
        completed_cases=completed,
        total_xp=profile.total_xp - xp_delta,
        updated_at=now,
    )


def apply_character_catch(
    profile: PlayerProfile,
    character_id: str,
    case_score: float,
    xp_earned: int,
    *,
    now: str,
) -> PlayerProfile:
    """Best-score-wins per character; the first ``caught_at`` is kept forever."""
    existing = profile.characters.get(character_id)
    if existing is not None and not case_score > existing.case_score:
        return replace(profile, updated_at=now)
    characters = dict(profile.characters)
    characters[character_id] = CaughtCharacter(
        caught_at=existing.caught_at if existing is not None else now,
        case_score=case_score,
        xp_earned=xp_earned,
    )
    return replace(profile, characters=characters, updated_at=now)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class ProgressTracker:
    """Explicit load/save store for the player profile.

    Create one per player and pass it to whatever needs it; nothing here is
    module-global.
    """

    def __init__(self, adapter: PersistenceAdapter, *, clock: Clock = utc_now) -> None:
        self.adapter = adapter
        self.clock = clock
        self.profile = PlayerProfile(updated_at=_timestamp(clock))
        self.loaded = False

    # ---------- Lifecycle ----------
    def load(self) -> PlayerProfile:
        raw = self.adapter.read_raw(STORAGE_KEY)
        if raw is None and self._has_legacy_data():
            self.profile = self._migrate_legacy()
        else:
            self.profile = self._sanitize_stored(raw)
        self.loaded = True
        logger.debug(
            "Loaded profile: %d completed case(s), %d character(s), total_xp=%d",
            len(self.profile.completed_cases),
            len(self.profile.characters),
            self.profile.total_xp,
        )
        return self.profile

    def save(self) -> bool:
        return self.adapter.write(STORAGE_KEY, self.profile.to_dict())

    def _sanitize_stored(self, raw: Any) -> PlayerProfile:
        if raw is None:
            return sanitize_profile(None, clock=self.clock)
        try:
            migrated = migrate_profile_payload(raw)
        except ProfileMigrationError as err:
            logger.warning("Stored profile ignored: %s", err)
            return sanitize_profile(None, clock=self.clock)
        return sanitize_profile(migrated, clock=self.clock)

    def _has_legacy_data(self) -> bool:
        return self.adapter.exists(OLD_PROGRESS_KEY) or self.adapter.exists(OLD_COLLECTION_KEY)

    def _migrate_legacy(self) -> PlayerProfile:
        merged = merge_legacy_payloads(
            self.adapter.read_raw(OLD_PROGRESS_KEY),
            self.adapter.read_raw(OLD_COLLECTION_KEY),
        )
        profile = self._sanitize_stored(merged)
        profile = replace(profile, updated_at=_timestamp(self.clock))
        if self.adapter.write(STORAGE_KEY, profile.to_dict()):
            self.adapter.remove(OLD_PROGRESS_KEY)
            self.adapter.remove(OLD_COLLECTION_KEY)
            logger.info("Migrated legacy progress and collection keys into %r.", STORAGE_KEY)
        return profile

    def _commit(self, profile: PlayerProfile) -> None:
        self.profile = profile
        self.save()

    # ---------- Case progress ----------
    @property
    def completed_cases(self) -> Mapping[str, CaseResult]:
        return self.profile.completed_cases

    @property
    def total_xp(self) -> int:
        return self.profile.total_xp

    def record_completion(self, case_id: str, score: CaseScore) -> CaseResult:
        updated = apply_case_completion(self.profile, case_id, score, now=_timestamp(self.clock))
        if updated.completed_cases.get(case_id) is not self.profile.completed_cases.get(case_id):
            logger.info("New best result for case %s: %s", case_id, score.total_score)
        self._commit(updated)
        return self.profile.completed_cases[case_id]

    def get_case_result(self, case_id: str) -> Optional[CaseResult]:
        return self.profile.completed_cases.get(case_id)

    def is_case_completed(self, case_id: str) -> bool:
        return case_id in self.profile.completed_cases

    def reset_case_progress(self, case_id: str) -> None:
        self._commit(apply_case_reset(self.profile, case_id, now=_timestamp(self.clock)))

    # ---------- Character collection ----------
    @property
    def characters(self) -> Mapping[str, CaughtCharacter]:
        return self.profile.characters

    def catch_character(self, character_id: str, case_score: float, xp_earned: int) -> CaughtCharacter:
        self._commit(
            apply_character_catch(
                self.profile, character_id, case_score, xp_earned, now=_timestamp(self.clock)
            )
        )
        return self.profile.characters[character_id]

    def is_character_caught(self, character_id: str) -> bool:
        return character_id in self.profile.characters

    def get_caught_character(self, character_id: str) -> Optional[CaughtCharacter]:
        return self.profile.characters.get(character_id)

    def get_collection_stats(self, catalog: CharacterCatalog) -> CollectionStats:
        return catalog.stats(self.profile.characters)


def completion_handler(
    tracker: ProgressTracker, catalog: Optional[CharacterCatalog] = None
) -> Callable[[str, CaseScore], None]:
    """Build a ``CaseSession`` ``on_complete`` callback that records the result.

    When the catalog links a character to the case, that character is caught
    with the same score.
    """

    def on_complete(case_id: str, score: CaseScore) -> None:
        tracker.record_completion(case_id, score)
        if catalog is None:
            return
        character = catalog.by_case_id(case_id)
        if character is not None:
            tracker.catch_character(character.id, score.total_score, score.xp_earned)

    return on_complete


def open_tracker(settings: EngineSettings, *, clock: Clock = utc_now) -> ProgressTracker:
    """Create and load a tracker over the storage backend named by ``settings``."""
    tracker = ProgressTracker(PersistenceAdapter(open_storage(settings.storage_dir)), clock=clock)
    tracker.load()
    return tracker
