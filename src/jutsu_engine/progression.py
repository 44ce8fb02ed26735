"""Jutsu progression: the session state machine driven by seal observations.

States::

    IDLE -> AWAITING(step) <-> HOLDING(step, progress) -> ... -> ACTIVATING -> IDLE

A step advances once the hold meter reaches 100. Frame-driven backends fill
the meter a fixed increment per tick while the observed seal matches; any
mismatch (including "no seal") empties it. One-shot backends (remote
verification) advance on a single positive verdict.

The session owns two background tasks for its lifetime: chakra regeneration
and the hold-progress ticker. Both are cancelled by ``close()``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from jutsu_engine.seals import Catalog, Jutsu, SealLabel

logger = logging.getLogger("jutsu_engine.progression")

MAX_PROGRESS = 100.0
# tolerance for accumulated float increments
PROGRESS_EPSILON = 1e-6


class Phase(Enum):
    IDLE = "idle"
    AWAITING = "awaiting"
    HOLDING = "holding"
    ACTIVATING = "activating"


class EventKind(Enum):
    SELECTED = "selected"
    PROGRESS = "progress"
    MISMATCH = "mismatch"
    REJECTED = "rejected"
    STEP_ADVANCED = "step_advanced"
    ACTIVATED = "activated"
    ABANDONED = "abandoned"
    IDLE = "idle"


@dataclass
class ProgressEvent:
    """Something the user should be told about."""
    kind: EventKind
    jutsu_id: Optional[str]
    step: int
    target: Optional[SealLabel]
    hold_progress: float
    chakra: float
    message: str = ""
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "type": self.kind.value,
            "jutsu": self.jutsu_id,
            "step": self.step,
            "target": self.target.value if self.target else None,
            "hold_progress": round(self.hold_progress, 1),
            "chakra": round(self.chakra, 1),
            "message": self.message,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class SessionSnapshot:
    phase: Phase
    jutsu_id: Optional[str]
    current_step: int
    total_steps: int
    target: Optional[SealLabel]
    hold_progress: float
    chakra: float
    activating: Optional[str]
    capturing: bool

    def to_dict(self) -> dict:
        return {
            "phase": self.phase.value,
            "jutsu": self.jutsu_id,
            "current_step": self.current_step,
            "total_steps": self.total_steps,
            "target": self.target.value if self.target else None,
            "hold_progress": round(self.hold_progress, 1),
            "chakra": round(self.chakra, 1),
            "activating": self.activating,
            "capturing": self.capturing,
        }


@dataclass(frozen=True)
class VerificationTicket:
    """Session position captured when a long-running verification starts."""
    jutsu_id: str
    step: int
    generation: int
    target: SealLabel


MESSAGES = {
    "en": {
        "focus": "Focus your chakra on the {sign} seal.",
        "next": "Next seal: {sign}.",
        "activated": "{jutsu} activated!",
        "incorrect": "Incorrect form.",
        "abandoned": "Training abandoned.",
        "idle": "Choose a jutsu scroll to begin.",
    },
    "zh": {
        "focus": "集中查克拉，结{sign}印。",
        "next": "下一个印：{sign}。",
        "activated": "{jutsu} 发动！",
        "incorrect": "姿势不对。",
        "abandoned": "修行已中止。",
        "idle": "选择一卷忍术开始修行。",
    },
}


def clamp(value: float, low: float = 0.0, high: float = MAX_PROGRESS) -> float:
    return max(low, min(high, value))


class JutsuSession:
    """Owns the progression state for one user.

    Args:
        catalog: Jutsu / hand-sign lookup.
        hold_duration: Seconds a seal must be held per step. ``None`` means
            one-shot confirmation via ``confirm()``.
        tick_interval: Seconds between hold ticks.
        chakra: Starting chakra.
        max_chakra: Chakra ceiling.
        jutsu_cost: Chakra spent on each activation.
        regen_amount: Chakra restored per regeneration tick.
        regen_interval: Seconds between regeneration ticks.
        activation_display: Seconds spent in ACTIVATING before going idle.
        language: ``en`` or ``zh`` for feedback messages.
    """

    def __init__(
        self,
        catalog: Optional[Catalog] = None,
        *,
        hold_duration: Optional[float] = 0.8,
        tick_interval: float = 0.1,
        chakra: float = 100.0,
        max_chakra: float = 100.0,
        jutsu_cost: float = 30.0,
        regen_amount: float = 5.0,
        regen_interval: float = 1.0,
        activation_display: float = 5.0,
        language: str = "en",
        clock: Callable[[], float] = time.monotonic,
    ):
        if hold_duration is not None and hold_duration <= 0:
            raise ValueError("hold_duration must be positive or None")
        if tick_interval <= 0:
            raise ValueError("tick_interval must be positive")

        self.catalog = catalog or Catalog.with_defaults()
        self.hold_duration = hold_duration
        self.tick_interval = tick_interval
        self.max_chakra = max_chakra
        self.jutsu_cost = jutsu_cost
        self.regen_amount = regen_amount
        self.regen_interval = regen_interval
        self.activation_display = activation_display
        self.language = language
        self._clock = clock

        self.jutsu: Optional[Jutsu] = None
        self.current_step = 0
        self.hold_progress = 0.0
        self.chakra = clamp(chakra, 0.0, max_chakra)
        self.activating: Optional[str] = None
        self.capturing = False

        self._generation = 0
        self._latest: tuple[Optional[SealLabel], float] = (None, 0.0)
        self.label_timeout = max(0.5, 3 * tick_interval)

        self._callbacks: list[Callable[[ProgressEvent], None]] = []
        self._regen_task: Optional[asyncio.Task] = None
        self._hold_task: Optional[asyncio.Task] = None
        self._activation_task: Optional[asyncio.Task] = None

    # --- State ---

    @property
    def phase(self) -> Phase:
        if self.activating is not None:
            return Phase.ACTIVATING
        if self.jutsu is None:
            return Phase.IDLE
        if self.hold_progress > 0:
            return Phase.HOLDING
        return Phase.AWAITING

    @property
    def target(self) -> Optional[SealLabel]:
        if self.jutsu is None or self.current_step >= len(self.jutsu.sequence):
            return None
        return self.jutsu.sequence[self.current_step]

    @property
    def hold_increment(self) -> float:
        """Progress added per matching tick."""
        if self.hold_duration is None:
            return MAX_PROGRESS
        return self.tick_interval / self.hold_duration * MAX_PROGRESS

    @property
    def latest_label(self) -> Optional[SealLabel]:
        """Most recent label passed to ``report()``."""
        return self._latest[0]

    @property
    def generation(self) -> int:
        """Bumped on every select/abandon/idle so stale results can be spotted."""
        return self._generation

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            phase=self.phase,
            jutsu_id=self.jutsu.id if self.jutsu else None,
            current_step=self.current_step,
            total_steps=len(self.jutsu.sequence) if self.jutsu else 0,
            target=self.target,
            hold_progress=self.hold_progress,
            chakra=self.chakra,
            activating=self.activating,
            capturing=self.capturing,
        )

    def on_event(self, callback: Callable[[ProgressEvent], None]):
        """Register a callback for progression events."""
        self._callbacks.append(callback)

    # --- Transitions ---

    def select(self, jutsu: str | Jutsu) -> list[ProgressEvent]:
        """Start (or restart) training a jutsu from its first seal."""
        if not isinstance(jutsu, Jutsu):
            jutsu = self.catalog.jutsu(jutsu)

        self._cancel_activation_timer()
        self.jutsu = jutsu
        self.current_step = 0
        self.hold_progress = 0.0
        self.activating = None
        self.capturing = True
        self._generation += 1
        self._latest = (None, 0.0)

        logger.info("Selected jutsu %s (%d seals)", jutsu.id, len(jutsu.sequence))
        return self._emit(EventKind.SELECTED, self._message("focus", sign=self._sign_name(self.target)))

    def abandon(self) -> list[ProgressEvent]:
        """Deselect the current jutsu. Chakra is neither refunded nor charged."""
        if self.jutsu is None:
            return []

        logger.info("Abandoned jutsu %s at step %d", self.jutsu.id, self.current_step)
        events = self._emit(EventKind.ABANDONED, self._message("abandoned"))
        self._reset_to_idle()
        return events

    def report(self, label: Optional[SealLabel | str]):
        """Record the latest classifier output for the hold ticker."""
        self._latest = (self._parse(label), self._clock())

    def observe(self, label: Optional[SealLabel | str]) -> list[ProgressEvent]:
        """Apply one hold tick with the seal seen during it."""
        target = self.target
        if target is None or self.activating is not None:
            return []

        if self._parse(label) != target:
            if self.hold_progress > 0:
                self.hold_progress = 0.0
                return self._emit(EventKind.MISMATCH)
            return []

        self.hold_progress = clamp(self.hold_progress + self.hold_increment)
        if self.hold_progress >= MAX_PROGRESS - PROGRESS_EPSILON:
            return self._complete_step()
        return self._emit(EventKind.PROGRESS)

    def ticket(self) -> Optional[VerificationTicket]:
        """Capture the current position before issuing a slow verification."""
        target = self.target
        if target is None or self.activating is not None:
            return None
        return VerificationTicket(
            jutsu_id=self.jutsu.id,
            step=self.current_step,
            generation=self._generation,
            target=target,
        )

    def is_current(self, ticket: VerificationTicket) -> bool:
        return (
            self.jutsu is not None
            and self.activating is None
            and ticket.generation == self._generation
            and ticket.jutsu_id == self.jutsu.id
            and ticket.step == self.current_step
        )

    def confirm(
        self,
        matched: bool,
        ticket: Optional[VerificationTicket] = None,
        tip: Optional[str] = None,
    ) -> list[ProgressEvent]:
        """Apply a one-shot verdict. Results for a stale ticket are dropped."""
        if ticket is not None and not self.is_current(ticket):
            logger.debug("Discarding stale verification for %s step %d", ticket.jutsu_id, ticket.step)
            return []
        if self.target is None or self.activating is not None:
            return []

        if not matched:
            self.hold_progress = 0.0
            return self._emit(EventKind.REJECTED, tip or self._message("incorrect"))

        self.hold_progress = MAX_PROGRESS
        return self._complete_step()

    def regenerate(self, amount: Optional[float] = None) -> float:
        """One chakra regeneration tick. Returns the new level."""
        step = self.regen_amount if amount is None else amount
        self.chakra = clamp(self.chakra + step, 0.0, self.max_chakra)
        return self.chakra

    def finish_activation(self) -> list[ProgressEvent]:
        """Leave ACTIVATING and return to IDLE."""
        if self.activating is None:
            return []
        self._reset_to_idle()
        return self._emit(EventKind.IDLE, self._message("idle"))

    def _complete_step(self) -> list[ProgressEvent]:
        jutsu = self.jutsu
        if self.current_step >= len(jutsu.sequence) - 1:
            self.current_step = len(jutsu.sequence)
            self.hold_progress = 0.0
            self.activating = jutsu.id
            self.chakra = clamp(self.chakra - self.jutsu_cost, 0.0, self.max_chakra)
            logger.info("Jutsu %s activated (chakra %.0f)", jutsu.id, self.chakra)
            events = self._emit(
                EventKind.ACTIVATED,
                self._message("activated", jutsu=jutsu.name.get(self.language)),
            )
            self._schedule_idle()
            return events

        self.current_step += 1
        self.hold_progress = 0.0
        return self._emit(EventKind.STEP_ADVANCED, self._message("next", sign=self._sign_name(self.target)))

    def _reset_to_idle(self):
        self._cancel_activation_timer()
        self.jutsu = None
        self.current_step = 0
        self.hold_progress = 0.0
        self.activating = None
        self.capturing = False
        self._generation += 1
        self._latest = (None, 0.0)

    # --- Background tasks ---

    @property
    def running(self) -> bool:
        return self._regen_task is not None and not self._regen_task.done()

    async def start(self):
        """Start chakra regeneration and the hold ticker on the running loop."""
        if self.running:
            return
        self._regen_task = asyncio.create_task(self._regen_loop())
        if self.hold_duration is not None:
            self._hold_task = asyncio.create_task(self._hold_loop())

    async def close(self):
        """Cancel every background task owned by the session."""
        tasks = [t for t in (self._regen_task, self._hold_task, self._activation_task) if t]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._regen_task = self._hold_task = self._activation_task = None

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, *args):
        await self.close()

    async def _regen_loop(self):
        while True:
            await asyncio.sleep(self.regen_interval)
            self.regenerate()

    async def _hold_loop(self):
        while True:
            await asyncio.sleep(self.tick_interval)
            label, seen_at = self._latest
            if self._clock() - seen_at > self.label_timeout:
                label = None
            self.observe(label)

    def _schedule_idle(self):
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # No loop: the owner calls finish_activation() itself.
            return
        self._cancel_activation_timer()
        self._activation_task = asyncio.create_task(self._idle_after_display())

    async def _idle_after_display(self):
        await asyncio.sleep(self.activation_display)
        self._activation_task = None
        self.finish_activation()

    def _cancel_activation_timer(self):
        if self._activation_task is not None and not self._activation_task.done():
            if self._activation_task is not asyncio.current_task():
                self._activation_task.cancel()
        self._activation_task = None

    # --- Helpers ---

    @staticmethod
    def _parse(label) -> Optional[SealLabel]:
        if label is None:
            return None
        try:
            return SealLabel.parse(label)
        except ValueError:
            return None

    def _sign_name(self, label: Optional[SealLabel]) -> str:
        return self.catalog.sign_name(label, self.language) if label else ""

    def _message(self, key: str, **kwargs) -> str:
        table = MESSAGES.get(self.language, MESSAGES["en"])
        return table[key].format(**kwargs)

    def _emit(self, kind: EventKind, message: str = "") -> list[ProgressEvent]:
        event = ProgressEvent(
            kind=kind,
            jutsu_id=self.jutsu.id if self.jutsu else None,
            step=self.current_step,
            target=self.target,
            hold_progress=self.hold_progress,
            chakra=self.chakra,
            message=message,
        )
        for cb in self._callbacks:
            try:
                cb(event)
            except Exception as e:
                logger.error("Progress callback error: %s", e)
        return [event]
