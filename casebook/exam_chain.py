"""Linear chains of exam video segments and their saved progress."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, List, Mapping, Optional, Set, Tuple

from .case_schema import is_non_empty_str, path
from .characters import round_half_up
from .storage import PersistenceAdapter

logger = logging.getLogger("casebook.exam_chain")

STORAGE_PREFIX = "cs-progress-"


@dataclass(frozen=True)
class VideoSegment:
    id: str
    label: str
    src: str
    poster: Optional[str] = None
    duration_hint: Optional[float] = None
    teaser: bool = False
    source_start_time: Optional[float] = None
    source_end_time: Optional[float] = None


@dataclass(frozen=True)
class ExamChain:
    exam_type: str
    exam_label: str
    segments: Tuple[VideoSegment, ...]

    def index_of(self, segment_id: str) -> Optional[int]:
        for index, segment in enumerate(self.segments):
            if segment.id == segment_id:
                return index
        return None


def _optional_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value


def validate_exam_chain(data: Any) -> List[str]:
    if not isinstance(data, Mapping):
        return ["$: exam chain must be a JSON object."]
    errors: List[str] = []
    for key in ("examType", "examLabel"):
        if not is_non_empty_str(data.get(key)):
            errors.append(f"{path(key)}: requires a non-empty '{key}'.")
    segments = data.get("segments")
    if not isinstance(segments, list):
        errors.append(f"{path('segments')}: must be a list of segments.")
        return errors
    seen: Set[str] = set()
    for index, segment in enumerate(segments):
        segment_path = path("segments", index)
        if not isinstance(segment, Mapping):
            errors.append(f"{segment_path}: must be an object.")
            continue
        for key in ("id", "label", "src"):
            if not is_non_empty_str(segment.get(key)):
                errors.append(f"{segment_path}: requires a non-empty '{key}'.")
        segment_id = segment.get("id")
        if isinstance(segment_id, str):
            if segment_id in seen:
                errors.append(f"{segment_path}: duplicate segment id '{segment_id}'.")
            seen.add(segment_id)
    return errors


def parse_exam_chain(data: Any) -> ExamChain:
    errors = validate_exam_chain(data)
    if errors:
        raise ValueError("Invalid exam chain:\n- " + "\n- ".join(errors))
    segments = tuple(
        VideoSegment(
            id=entry["id"],
            label=entry["label"],
            src=entry["src"],
            poster=entry.get("poster") if isinstance(entry.get("poster"), str) else None,
            duration_hint=_optional_number(entry.get("durationHint")),
            teaser=entry.get("teaser") is True,
            source_start_time=_optional_number(entry.get("sourceStartTime")),
            source_end_time=_optional_number(entry.get("sourceEndTime")),
        )
        for entry in data["segments"]
    )
    return ExamChain(exam_type=data["examType"], exam_label=data["examLabel"], segments=segments)


class ChainPlayer:
    """Plays a chain front to back, advancing when a segment ends."""

    def __init__(
        self,
        chain: ExamChain,
        *,
        completed: Iterable[str] = (),
        on_segment_complete: Optional[Callable[[str], Any]] = None,
        on_chain_complete: Optional[Callable[[], Any]] = None,
    ) -> None:
        self.chain = chain
        self.current_index = 0
        self.completed: Set[str] = set(completed)
        self.finished = False
        self._on_segment_complete = on_segment_complete
        self._on_chain_complete = on_chain_complete

    @property
    def current_segment(self) -> Optional[VideoSegment]:
        if 0 <= self.current_index < len(self.chain.segments):
            return self.chain.segments[self.current_index]
        return None

    @property
    def is_last_segment(self) -> bool:
        return self.current_index == len(self.chain.segments) - 1

    @property
    def progress_percent(self) -> int:
        total = len(self.chain.segments)
        if total == 0:
            return 0
        done = sum(1 for segment in self.chain.segments if segment.id in self.completed)
        return round_half_up(done / total * 100)

    def select_segment(self, segment_id: str) -> VideoSegment:
        index = self.chain.index_of(segment_id)
        if index is None:
            raise KeyError(f"Segment '{segment_id}' is not part of exam '{self.chain.exam_type}'.")
        self.current_index = index
        self.finished = False
        return self.chain.segments[index]

    def complete_current(self) -> Optional[VideoSegment]:
        """Mark the current segment watched; return the next one, or None at the end."""
        segment = self.current_segment
        if segment is None:
            return None
        self.completed.add(segment.id)
        if self._on_segment_complete is not None:
            self._on_segment_complete(segment.id)
        if self.is_last_segment:
            self.finished = True
            logger.info("Exam chain %s finished.", self.chain.exam_type)
            if self._on_chain_complete is not None:
                self._on_chain_complete()
            return None
        self.current_index += 1
        return self.current_segment


@dataclass(frozen=True)
class SegmentProgress:
    completed_segments: Tuple[str, ...] = ()
    last_segment_id: Optional[str] = None
    updated_at: str = ""

    def to_dict(self) -> dict:
        return {
            "completedSegments": list(self.completed_segments),
            "lastSegmentId": self.last_segment_id,
            "updatedAt": self.updated_at,
        }


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def sanitize_segment_progress(raw: Any, *, now: Optional[str] = None) -> SegmentProgress:
    stamp = now or _now()
    if not isinstance(raw, Mapping):
        return SegmentProgress(updated_at=stamp)
    segments = raw.get("completedSegments")
    completed: List[str] = []
    if isinstance(segments, list):
        for segment_id in segments:
            if isinstance(segment_id, str) and segment_id not in completed:
                completed.append(segment_id)
    last = raw.get("lastSegmentId")
    updated_at = raw.get("updatedAt")
    return SegmentProgress(
        completed_segments=tuple(completed),
        last_segment_id=last if isinstance(last, str) else None,
        updated_at=updated_at if isinstance(updated_at, str) else stamp,
    )


class SegmentProgressTracker:
    """Per-exam record of watched segments and the last position."""

    def __init__(
        self,
        adapter: PersistenceAdapter,
        exam_type: str,
        *,
        clock: Callable[[], str] = _now,
    ) -> None:
        self.adapter = adapter
        self.exam_type = exam_type
        self.clock = clock
        self.progress = SegmentProgress(updated_at=clock())

    @property
    def storage_key(self) -> str:
        return f"{STORAGE_PREFIX}{self.exam_type}"

    def load(self) -> SegmentProgress:
        self.progress = self.adapter.read(
            self.storage_key, lambda raw: sanitize_segment_progress(raw, now=self.clock())
        )
        return self.progress

    def save_segment_progress(self, segment_id: str) -> SegmentProgress:
        completed = self.progress.completed_segments
        if segment_id not in completed:
            completed = completed + (segment_id,)
        self.progress = replace(
            self.progress,
            completed_segments=completed,
            last_segment_id=segment_id,
            updated_at=self.clock(),
        )
        self.adapter.write(self.storage_key, self.progress.to_dict())
        return self.progress

    def reset_progress(self) -> SegmentProgress:
        self.progress = SegmentProgress(updated_at=self.clock())
        self.adapter.write(self.storage_key, self.progress.to_dict())
        return self.progress
