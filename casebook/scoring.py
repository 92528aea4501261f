"""Choice scoring for case playthroughs.

The scoring key is authored alongside the case but never shipped with the
student-facing manifest: ``extract_scoring_key`` pulls the per-choice
``scoring`` blocks out of an authored manifest and ``strip_scoring_data``
returns the copy that is safe to hand to the player.

Point values and optimality come from the key as authored; this module only
accumulates them.
"""

from __future__ import annotations

import copy
import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

from .case_schema import is_list_like

logger = logging.getLogger("casebook.scoring")

DEFAULT_BASE_XP = 50


class ScoringError(Exception):
    """Raised when a score is finalised too early or more than once."""


def _as_number(value: Any, default: float = 0) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    if not math.isfinite(value):
        return default
    return value


def _as_int(value: Any, default: int = 0) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return default


def _as_optional_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


@dataclass(frozen=True)
class ScoringEntry:
    optimal: bool = False
    points: float = 0
    xp: int = 0
    rationale: Optional[str] = None
    teaching: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> "ScoringEntry":
        if not isinstance(data, Mapping):
            return cls()
        return cls(
            optimal=data.get("optimal") is True,
            points=_as_number(data.get("points")),
            xp=_as_int(data.get("xp")),
            rationale=_as_optional_str(data.get("rationale")),
            teaching=_as_optional_str(data.get("teaching")),
        )


NEUTRAL_ENTRY = ScoringEntry()


class ScoringKey:
    """Lookup of ``(node_id, choice_id)`` to its authored scoring entry."""

    def __init__(self, entries: Optional[Mapping[Tuple[str, str], ScoringEntry]] = None) -> None:
        self._entries: Dict[Tuple[str, str], ScoringEntry] = dict(entries or {})

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __iter__(self) -> Iterator[Tuple[str, str]]:
        return iter(self._entries)

    def lookup(self, node_id: str, choice_id: str) -> ScoringEntry:
        return self._entries.get((node_id, choice_id), NEUTRAL_ENTRY)

    @classmethod
    def from_dict(cls, data: Any) -> "ScoringKey":
        """Build a key from ``{nodeId: {choiceId: {optimal, points, ...}}}``."""
        entries: Dict[Tuple[str, str], ScoringEntry] = {}
        if not isinstance(data, Mapping):
            return cls()
        for node_id, choices in data.items():
            if not isinstance(choices, Mapping):
                continue
            for choice_id, raw in choices.items():
                entries[(str(node_id), str(choice_id))] = ScoringEntry.from_dict(raw)
        return cls(entries)

    def to_dict(self) -> Dict[str, Dict[str, Dict[str, Any]]]:
        result: Dict[str, Dict[str, Dict[str, Any]]] = {}
        for (node_id, choice_id), entry in self._entries.items():
            result.setdefault(node_id, {})[choice_id] = {
                "optimal": entry.optimal,
                "points": entry.points,
                "xp": entry.xp,
                "rationale": entry.rationale,
                "teaching": entry.teaching,
            }
        return result


def _iter_raw_choices(raw_manifest: Mapping[str, Any]) -> Iterator[Tuple[str, Dict[str, Any]]]:
    nodes = raw_manifest.get("nodes")
    if isinstance(nodes, Mapping):
        pairs = list(nodes.items())
    elif isinstance(nodes, list):
        pairs = [(entry.get("id"), entry) for entry in nodes if isinstance(entry, Mapping)]
    else:
        return
    for node_id, node in pairs:
        if not isinstance(node_id, str) or not isinstance(node, Mapping):
            continue
        choices = node.get("choices")
        if not is_list_like(choices):
            continue
        for choice in choices:
            if isinstance(choice, dict):
                yield node_id, choice


def extract_scoring_key(raw_manifest: Mapping[str, Any]) -> ScoringKey:
    entries: Dict[Tuple[str, str], ScoringEntry] = {}
    for node_id, choice in _iter_raw_choices(raw_manifest):
        choice_id = choice.get("id")
        if "scoring" not in choice or not isinstance(choice_id, str):
            continue
        entries[(node_id, choice_id)] = ScoringEntry.from_dict(choice["scoring"])
    return ScoringKey(entries)


def strip_scoring_data(raw_manifest: Mapping[str, Any]) -> Dict[str, Any]:
    stripped = copy.deepcopy(dict(raw_manifest))
    for _node_id, choice in _iter_raw_choices(stripped):
        choice.pop("scoring", None)
    return stripped


@dataclass(frozen=True)
class ChoiceRecord:
    node_id: str
    choice_id: str
    optimal: bool = False
    points: float = 0
    xp: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nodeId": self.node_id,
            "choiceId": self.choice_id,
            "optimal": self.optimal,
            "points": self.points,
            "xp": self.xp,
        }

    @classmethod
    def from_dict(cls, data: Any) -> Optional["ChoiceRecord"]:
        if not isinstance(data, Mapping):
            return None
        node_id = data.get("nodeId")
        choice_id = data.get("choiceId")
        if not isinstance(node_id, str) or not isinstance(choice_id, str):
            return None
        return cls(
            node_id=node_id,
            choice_id=choice_id,
            optimal=data.get("optimal") is True,
            points=_as_number(data.get("points")),
            xp=_as_int(data.get("xp")),
        )


@dataclass(frozen=True)
class CaseScore:
    total_score: float = 0
    xp_earned: int = 0
    optimal_choices: int = 0
    total_choices: int = 0
    history: Tuple[ChoiceRecord, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalScore": self.total_score,
            "xpEarned": self.xp_earned,
            "optimalChoices": self.optimal_choices,
            "totalChoices": self.total_choices,
            "history": [record.to_dict() for record in self.history],
        }

    @classmethod
    def from_dict(cls, data: Any) -> "CaseScore":
        """Rebuild a stored score; each malformed field falls back to its default."""
        if not isinstance(data, Mapping):
            return cls()
        raw_history = data.get("history")
        history: List[ChoiceRecord] = []
        if isinstance(raw_history, list):
            for entry in raw_history:
                record = ChoiceRecord.from_dict(entry)
                if record is not None:
                    history.append(record)
        return cls(
            total_score=_as_number(data.get("totalScore")),
            xp_earned=_as_int(data.get("xpEarned")),
            optimal_choices=_as_int(data.get("optimalChoices")),
            total_choices=_as_int(data.get("totalChoices")),
            history=tuple(history),
        )


class ScoringEngine:
    """Accumulates one playthrough's score and freezes it exactly once."""

    def __init__(self, key: Optional[ScoringKey] = None, *, base_xp: int = DEFAULT_BASE_XP) -> None:
        self.key = key or ScoringKey()
        self.base_xp = base_xp
        self.total_score: float = 0
        self.history: List[ChoiceRecord] = []
        self.terminal_reached = False
        self._final: Optional[CaseScore] = None

    @property
    def finalized(self) -> bool:
        return self._final is not None

    @property
    def final_score(self) -> Optional[CaseScore]:
        return self._final

    def on_choice(self, node_id: str, choice_id: str) -> ChoiceRecord:
        if self.finalized:
            raise ScoringError("Cannot score choices after the case was finalised.")
        entry = self.key.lookup(node_id, choice_id)
        if (node_id, choice_id) not in self.key:
            logger.debug("No scoring entry for %s/%s; scoring as neutral.", node_id, choice_id)
        record = ChoiceRecord(
            node_id=node_id,
            choice_id=choice_id,
            optimal=entry.optimal,
            points=entry.points,
            xp=entry.xp,
        )
        self.history.append(record)
        self.total_score += entry.points
        return record

    def mark_terminal(self) -> None:
        self.terminal_reached = True

    def snapshot(self) -> CaseScore:
        xp = self.base_xp + sum(record.xp for record in self.history)
        return CaseScore(
            total_score=self.total_score,
            xp_earned=max(0, xp),
            optimal_choices=sum(1 for record in self.history if record.optimal),
            total_choices=len(self.history),
            history=tuple(self.history),
        )

    def finalize(self) -> CaseScore:
        if self._final is not None:
            raise ScoringError("Case score was already finalised.")
        if not self.terminal_reached:
            raise ScoringError("Case score cannot be finalised before a terminal node is reached.")
        self._final = self.snapshot()
        logger.info(
            "Finalised score %s (xp=%d, optimal %d/%d).",
            self._final.total_score,
            self._final.xp_earned,
            self._final.optimal_choices,
            self._final.total_choices,
        )
        return self._final
