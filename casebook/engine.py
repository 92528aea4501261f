"""Branching case traversal engine.

Public API summary:
    session = CaseSession(manifest, scoring_key, scheduler=ManualScheduler())
    session.start()                 -> SessionView
    session.select_choice(cid)      -> SessionView
    session.view()                  -> SessionView
    session.update_ddx(entries)     -> tuple of diagnoses
    session.snapshot_ddx()          -> DdxSnapshot
    session.finalize()              -> CaseScore
    session.close()                 -> None

The logger name for this module is ``casebook.engine``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .case_schema import RAPPORT_MAX, RAPPORT_MIN
from .manifest import CaseChoice, CaseManifest, CaseNode, Clue
from .scoring import DEFAULT_BASE_XP, CaseScore, ScoringEngine, ScoringKey
from .settings import EngineSettings
from .timers import ManualScheduler, Scheduler, TimerHandle

logger = logging.getLogger("casebook.engine")

TransitionListener = Callable[["SessionView"], Any]
CompletionListener = Callable[[str, CaseScore], Any]


class SessionError(Exception):
    """Base class for rejected session operations."""


class SessionNotStartedError(SessionError):
    """Raised when a session is driven before ``start()``."""


class SessionClosedError(SessionError):
    """Raised when a torn-down session is driven."""


class InvalidChoiceError(SessionError):
    """Raised for a choice id that is not offered by the current node."""

    def __init__(self, node_id: str, choice_id: str, valid: List[str]) -> None:
        self.node_id = node_id
        self.choice_id = choice_id
        self.valid = valid
        super().__init__(
            f"Choice '{choice_id}' is not available at node '{node_id}'. Valid choices: {valid}"
        )


class TransitionInProgressError(SessionError):
    """Raised when a choice arrives while another transition is being applied."""


def clamp_rapport(value: int) -> int:
    return max(RAPPORT_MIN, min(RAPPORT_MAX, value))


@dataclass(frozen=True)
class DdxSnapshot:
    node_id: str
    ddx: Tuple[str, ...]


@dataclass(frozen=True)
class SessionView:
    node: CaseNode
    available_choices: Tuple[CaseChoice, ...]
    is_terminal: bool
    score_so_far: CaseScore
    history: Tuple[str, ...]
    visited: Tuple[str, ...] = ()
    cp_spent: int = 0
    cp_budget: int = 0
    rapport: int = 0
    clues: Tuple[Clue, ...] = ()
    key_findings_found: int = 0
    ddx: Tuple[str, ...] = ()


class CaseSession:
    """
    One playthrough of a case manifest.

    Attributes:
        manifest:        The immutable case being played.
        current_node_id: Id of the node the student is on.
        history:         Choice ids taken so far, append-only.
        visited:         Node ids in the order they were entered, start included.
        transitions:     ``{"from", "to", "choice"}`` entries for review;
                         auto-advances are logged with ``choice=None``.
        timeouts:        Node ids whose timed choice ran out.
        cp_spent:        Clinical points spent on choices and node entries.
        rapport:         Patient rapport, kept within 0..100.
        clues:           Clues revealed so far, first occurrence of each id.
        ddx:             Current differential diagnosis board.
        ddx_history:     Snapshots of the board, taken by ``snapshot_ddx``.
        scoring:         The ScoringEngine fed with every choice.
    """

    def __init__(
        self,
        manifest: CaseManifest,
        scoring_key: Optional[ScoringKey] = None,
        *,
        scheduler: Optional[Scheduler] = None,
        base_xp: int = DEFAULT_BASE_XP,
        auto_advance: bool = True,
        min_auto_advance_ms: int = 0,
        on_transition: Optional[TransitionListener] = None,
        on_complete: Optional[CompletionListener] = None,
    ) -> None:
        self.manifest = manifest
        self.scheduler: Scheduler = scheduler if scheduler is not None else ManualScheduler()
        self.scoring = ScoringEngine(scoring_key, base_xp=base_xp)
        self.auto_advance_enabled = auto_advance
        self.min_auto_advance_ms = max(0, min_auto_advance_ms)
        self.current_node_id = manifest.start_node_id
        self.history: List[str] = []
        self.visited: List[str] = [manifest.start_node_id]
        self.transitions: List[Dict[str, Optional[str]]] = []
        self.timeouts: List[str] = []
        self.cp_spent = 0
        self.rapport = clamp_rapport(manifest.starting_rapport)
        self.clues: List[Clue] = []
        self.ddx: Tuple[str, ...] = ()
        self.ddx_history: List[DdxSnapshot] = []
        self.started = False
        self.closed = False
        self._on_transition: List[TransitionListener] = [on_transition] if on_transition else []
        self._on_complete = on_complete
        self._pending: Optional[TimerHandle] = None
        self._transitioning = False

    @classmethod
    def from_settings(
        cls,
        manifest: CaseManifest,
        scoring_key: Optional[ScoringKey],
        settings: EngineSettings,
        **kwargs: Any,
    ) -> "CaseSession":
        return cls(
            manifest,
            scoring_key,
            base_xp=settings.base_completion_xp,
            auto_advance=settings.auto_advance,
            min_auto_advance_ms=settings.min_auto_advance_ms,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Read-only helpers
    # ------------------------------------------------------------------

    @property
    def current_node(self) -> CaseNode:
        return self.manifest.nodes[self.current_node_id]

    @property
    def is_terminal(self) -> bool:
        return self.current_node.is_terminal

    @property
    def auto_advance_pending(self) -> bool:
        return self._pending is not None and self._pending.pending

    @property
    def key_findings_found(self) -> int:
        return sum(1 for clue in self.clues if clue.is_key_finding)

    def available_choices(self) -> Tuple[CaseChoice, ...]:
        if self.closed:
            return ()
        return self.current_node.choices

    def view(self) -> SessionView:
        node = self.current_node
        return SessionView(
            node=node,
            available_choices=self.available_choices(),
            is_terminal=node.is_terminal,
            score_so_far=self.scoring.snapshot(),
            history=tuple(self.history),
            visited=tuple(self.visited),
            cp_spent=self.cp_spent,
            cp_budget=self.manifest.starting_cp,
            rapport=self.rapport,
            clues=tuple(self.clues),
            key_findings_found=self.key_findings_found,
            ddx=self.ddx,
        )

    def add_listener(self, listener: TransitionListener) -> None:
        self._on_transition.append(listener)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> SessionView:
        self._ensure_open()
        if self.started:
            return self.view()
        self.started = True
        logger.info(
            "Case session started: case_id=%s, start_node=%s",
            self.manifest.id,
            self.current_node_id,
        )
        self._transitioning = True
        try:
            self._enter_current_node()
        finally:
            self._transitioning = False
        return self.view()

    def close(self) -> None:
        if self.closed:
            return
        self._cancel_pending()
        self.closed = True
        logger.info(
            "Case session closed: case_id=%s at node=%s after %d choice(s).",
            self.manifest.id,
            self.current_node_id,
            len(self.history),
        )

    def finalize(self) -> CaseScore:
        return self.scoring.finalize()

    # ------------------------------------------------------------------
    # Differential diagnosis board
    # ------------------------------------------------------------------

    def update_ddx(self, entries: Sequence[str]) -> Tuple[str, ...]:
        """Replace the board; blank and repeated entries are dropped, order kept."""
        self._ensure_open()
        board: List[str] = []
        for entry in entries:
            if isinstance(entry, str) and entry.strip() and entry not in board:
                board.append(entry)
        self.ddx = tuple(board)
        return self.ddx

    def snapshot_ddx(self) -> DdxSnapshot:
        self._ensure_open()
        snapshot = DdxSnapshot(node_id=self.current_node_id, ddx=self.ddx)
        self.ddx_history.append(snapshot)
        return snapshot

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def select_choice(self, choice_id: str) -> SessionView:
        self._ensure_open()
        if not self.started:
            raise SessionNotStartedError("Call start() before selecting choices.")
        if self._transitioning:
            logger.warning(
                "Choice %r rejected: transition from node %s still in progress.",
                choice_id,
                self.current_node_id,
            )
            raise TransitionInProgressError(
                f"Choice '{choice_id}' arrived while a transition was in progress."
            )
        node = self.current_node
        choice = node.get_choice(choice_id)
        if choice is None:
            valid = [entry.id for entry in node.choices]
            logger.warning(
                "select_choice called with unknown choice_id=%r at node=%s. Valid IDs: %s",
                choice_id,
                node.id,
                valid,
            )
            raise InvalidChoiceError(node.id, choice_id, valid)

        self._apply_choice(node, choice)
        return self.view()

    def _apply_choice(self, node: CaseNode, choice: CaseChoice) -> None:
        self.scoring.on_choice(node.id, choice.id)
        self.history.append(choice.id)
        self.cp_spent += choice.cp_cost
        self.rapport = clamp_rapport(self.rapport + choice.rapport_effect)
        self._move_to(choice.next, choice.id)

    def _timer_is_stale(self, origin: str) -> bool:
        self._pending = None
        if self.closed or self.current_node_id != origin:
            logger.debug("Stale timer from %s ignored.", origin)
            return True
        if self._transitioning:
            logger.debug("Timer from %s skipped during transition.", origin)
            return True
        return False

    def _fire_auto_advance(self, origin: str, target: str) -> None:
        if self._timer_is_stale(origin):
            return
        logger.debug("Auto-advancing %s -> %s.", origin, target)
        self._move_to(target, None)

    def _fire_timed_choice(self, origin: str, default_choice_id: str) -> None:
        if self._timer_is_stale(origin):
            return
        node = self.current_node
        choice = node.get_choice(default_choice_id)
        if choice is None:
            logger.error("Timed choice at %s names unknown default %r.", origin, default_choice_id)
            return
        logger.info("Time ran out at node %s; taking default choice %s.", origin, choice.id)
        self.timeouts.append(origin)
        self._apply_choice(node, choice)

    def _move_to(self, target: str, choice_id: Optional[str]) -> None:
        origin = self.current_node_id
        self._transitioning = True
        try:
            self._cancel_pending()
            self.current_node_id = target
            self.visited.append(target)
            self.transitions.append({"from": origin, "to": target, "choice": choice_id})
            logger.debug("Transition %s -> %s via %s.", origin, target, choice_id or "auto-advance")
            self._enter_current_node()
        finally:
            self._transitioning = False

    def _reveal(self, node: CaseNode) -> None:
        self.cp_spent += node.cp_cost
        self.rapport = clamp_rapport(self.rapport + node.rapport_effect)
        known = {clue.id for clue in self.clues}
        for clue in node.clues:
            if clue.id not in known:
                known.add(clue.id)
                self.clues.append(clue)

    def _enter_current_node(self) -> None:
        node = self.current_node
        self._reveal(node)
        view = self.view()
        for listener in list(self._on_transition):
            listener(view)

        if node.is_terminal:
            self._complete()
            return
        if node.timed_choice is not None:
            origin = node.id
            default_choice_id = node.timed_choice.default_choice_id
            self._pending = self.scheduler.schedule(
                lambda: self._fire_timed_choice(origin, default_choice_id),
                node.timed_choice.time_limit_ms,
            )
            return
        # A node without choices always advances, even with auto-advance off.
        if node.auto_advance is not None and (self.auto_advance_enabled or not node.choices):
            origin = node.id
            target = node.auto_advance.next
            self._pending = self.scheduler.schedule(
                lambda: self._fire_auto_advance(origin, target),
                max(node.auto_advance.after_ms, self.min_auto_advance_ms),
            )

    def _complete(self) -> None:
        self.scoring.mark_terminal()
        logger.info(
            "Case %s reached terminal node %s after %d choice(s).",
            self.manifest.id,
            self.current_node_id,
            len(self.history),
        )
        if self._on_complete is None:
            return
        score = self.scoring.finalize()
        self._on_complete(self.manifest.id, score)

    def _cancel_pending(self) -> None:
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None

    def _ensure_open(self) -> None:
        if self.closed:
            raise SessionClosedError(f"Case session for '{self.manifest.id}' is closed.")
