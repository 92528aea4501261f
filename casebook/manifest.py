"""Immutable case manifest model and loaders."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, FrozenSet, List, Mapping, Optional, Tuple, Union

from .case_schema import DEFAULT_STARTING_RAPPORT, normalize_nodes, validate_manifest

logger = logging.getLogger("casebook.manifest")


class ManifestError(ValueError):
    """Raised when authored case content fails validation."""

    def __init__(self, errors: List[str], source: Optional[str] = None) -> None:
        self.errors = list(errors)
        self.source = source
        label = source or "case manifest"
        super().__init__(f"Invalid {label}:\n- " + "\n- ".join(self.errors))


@dataclass(frozen=True)
class PlaceholderAsset:
    label: Optional[str] = None
    description: Optional[str] = None

    @property
    def kind(self) -> str:
        return "placeholder"


@dataclass(frozen=True)
class MediaAsset:
    kind: str
    src: str
    thumbnail: Optional[str] = None


CaseAsset = Union[PlaceholderAsset, MediaAsset]


@dataclass(frozen=True)
class Clue:
    id: str
    label: str
    value: str = ""
    type: str = "history"
    is_key_finding: bool = False


@dataclass(frozen=True)
class CaseChoice:
    id: str
    label: str
    next: str
    description: Optional[str] = None
    rationale: Optional[str] = None
    cp_cost: int = 0
    rapport_effect: int = 0


@dataclass(frozen=True)
class AutoAdvance:
    next: str
    after_ms: int


@dataclass(frozen=True)
class TimedChoice:
    """Countdown after which ``default_choice_id`` is picked for the student."""

    time_limit_ms: int
    default_choice_id: str


@dataclass(frozen=True)
class CaseNode:
    id: str
    asset: CaseAsset = field(default_factory=PlaceholderAsset)
    choices: Tuple[CaseChoice, ...] = ()
    title: Optional[str] = None
    description: Optional[str] = None
    prompt: Optional[str] = None
    auto_advance: Optional[AutoAdvance] = None
    timed_choice: Optional[TimedChoice] = None
    clues: Tuple[Clue, ...] = ()
    cp_cost: int = 0
    rapport_effect: int = 0

    @property
    def is_terminal(self) -> bool:
        return not self.choices and self.auto_advance is None

    def get_choice(self, choice_id: str) -> Optional[CaseChoice]:
        for choice in self.choices:
            if choice.id == choice_id:
                return choice
        return None


@dataclass(frozen=True)
class CaseManifest:
    id: str
    title: str
    start_node_id: str
    nodes: Mapping[str, CaseNode]
    chief_complaint: str = ""
    summary: str = ""
    language_level: str = "B1"
    skills: FrozenSet[str] = frozenset()
    estimated_duration_minutes: int = 0
    starting_cp: int = 0
    starting_rapport: int = DEFAULT_STARTING_RAPPORT

    @property
    def start_node(self) -> CaseNode:
        return self.nodes[self.start_node_id]

    def get_node(self, node_id: str) -> Optional[CaseNode]:
        return self.nodes.get(node_id)

    def terminal_node_ids(self) -> List[str]:
        return [node_id for node_id, node in self.nodes.items() if node.is_terminal]

    def key_finding_ids(self) -> FrozenSet[str]:
        return frozenset(
            clue.id for node in self.nodes.values() for clue in node.clues if clue.is_key_finding
        )


def _build_asset(raw: Any) -> CaseAsset:
    if not isinstance(raw, Mapping):
        return PlaceholderAsset()
    kind = raw.get("kind")
    if kind == "placeholder":
        return PlaceholderAsset(label=raw.get("label"), description=raw.get("description"))
    return MediaAsset(kind=kind, src=raw["src"], thumbnail=raw.get("thumbnail"))


def _build_clue(raw: Mapping[str, Any]) -> Clue:
    return Clue(
        id=raw["id"],
        label=raw["label"],
        value=raw.get("value") or "",
        type=raw.get("type", "history"),
        is_key_finding=raw.get("isKeyFinding", False),
    )


def _build_node(node_id: str, raw: Mapping[str, Any]) -> CaseNode:
    choices = tuple(
        CaseChoice(
            id=entry["id"],
            label=entry["label"],
            next=entry["next"],
            description=entry.get("description"),
            rationale=entry.get("rationale"),
            cp_cost=entry.get("cpCost", 0),
            rapport_effect=entry.get("rapportEffect", 0),
        )
        for entry in raw.get("choices") or []
    )
    auto_raw = raw.get("autoAdvance")
    auto_advance = None
    if auto_raw is not None:
        auto_advance = AutoAdvance(next=auto_raw["next"], after_ms=auto_raw["afterMs"])
    timed_raw = raw.get("timedChoice")
    timed_choice = None
    if timed_raw is not None:
        timed_choice = TimedChoice(
            time_limit_ms=timed_raw["timeLimitMs"],
            default_choice_id=timed_raw["defaultChoiceId"],
        )
    return CaseNode(
        id=node_id,
        asset=_build_asset(raw.get("asset")),
        choices=choices,
        title=raw.get("title"),
        description=raw.get("description"),
        prompt=raw.get("prompt"),
        auto_advance=auto_advance,
        timed_choice=timed_choice,
        clues=tuple(_build_clue(entry) for entry in raw.get("clues") or []),
        cp_cost=raw.get("cpCost", 0),
        rapport_effect=raw.get("rapportEffect", 0),
    )


def parse_manifest(data: Any, *, source: Optional[str] = None) -> CaseManifest:
    """Validate raw manifest data and build the immutable model.

    Every validation problem is collected before raising, so authors can fix
    a manifest in one pass.
    """
    errors = validate_manifest(data)
    if errors:
        raise ManifestError(errors, source)

    raw_nodes, _ = normalize_nodes(data.get("nodes"))
    nodes = {node_id: _build_node(node_id, raw) for node_id, raw in raw_nodes.items()}
    return CaseManifest(
        id=data["id"],
        title=data["title"],
        start_node_id=data["startNodeId"],
        nodes=MappingProxyType(nodes),
        chief_complaint=data.get("chiefComplaint") or "",
        summary=data.get("summary") or "",
        language_level=data["languageLevel"],
        skills=frozenset(data.get("skills") or ()),
        estimated_duration_minutes=data.get("estimatedDurationMinutes") or 0,
        starting_cp=data.get("startingCp", 0),
        starting_rapport=data.get("startingRapport", DEFAULT_STARTING_RAPPORT),
    )


def load_manifest(path: Path | str) -> CaseManifest:
    path = Path(path)
    with path.open("r", encoding="utf-8") as handle:
        data = json.load(handle)
    return parse_manifest(data, source=str(path))


def try_load_manifest(path: Path | str) -> Tuple[Optional[CaseManifest], List[str]]:
    """Load a manifest without raising; a bad file yields ``(None, errors)``."""
    path = Path(path)
    try:
        return load_manifest(path), []
    except ManifestError as exc:
        logger.error("Case manifest %s rejected with %d error(s).", path, len(exc.errors))
        for message in exc.errors:
            logger.error("  %s", message)
        return None, exc.errors
    except (OSError, json.JSONDecodeError) as exc:
        logger.error("Case manifest %s could not be read: %s", path, exc)
        return None, [f"{path}: {exc}"]
