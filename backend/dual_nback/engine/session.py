"""
Game session state machine.

A session owns one block of n-back trials: the fixed stimulus sequence, the
response log and both cursors (stimuli delivered, trials answered). Stimulus
delivery runs as an asyncio task; responses arrive from the channel. Both
paths mutate the session only while holding its lock. The send itself
happens outside the lock, so a slow socket never stalls responses.

Once every trial has been answered the block completes, unless the final
trial is still missing a claim on some channel: then it stays open for one
more ISI so that claim can land, and completes on whichever comes first.

    created -> running <-> paused -> completed | ended
"""

import asyncio
import logging
import random
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from dual_nback.api.protocol import Outbound, Stimulus, StimulusData
from dual_nback.errors import DeliveryFailure, InvalidTransition, SessionNotActive, ValidationError
from dual_nback.models.game import (
    BlockResult,
    GameConfig,
    RespondResult,
    SessionState,
    SessionStats,
    StimulusPacket,
    UserResponse,
)
from dual_nback.models.history import SessionRecord
from dual_nback.tools.accuracy import ResponseLog, evaluate_all
from dual_nback.tools.difficulty import DifficultyAdjudicator
from dual_nback.tools.sequence_generator import MATCH_PROBABILITY, RandomSource, generate_sequence
from dual_nback.tools.summary import build_trial_records, summarize

logger = logging.getLogger(__name__)

Sender = Callable[[Outbound], Awaitable[None]]
FailureHandler = Callable[["GameSession", DeliveryFailure], Awaitable[None]]
CompletionHandler = Callable[["GameSession", BlockResult], Awaitable[None]]


class GameSession:
    """Single-writer owner of one block's state."""

    def __init__(
        self,
        config: GameConfig,
        *,
        session_id: Optional[str] = None,
        sender: Optional[Sender] = None,
        on_delivery_failure: Optional[FailureHandler] = None,
        on_complete: Optional[CompletionHandler] = None,
        rng: Optional[RandomSource] = None,
        adjudicator: Optional[DifficultyAdjudicator] = None,
        match_probability: float = MATCH_PROBABILITY,
        clock: Callable[[], float] = time.time,
    ):
        self.session_id = session_id or str(uuid.uuid4())
        self.config = config
        self.channels = list(config.channels)
        self.created_at = clock()
        self.stimuli: List[StimulusPacket] = generate_sequence(
            config.block_size,
            config.n_level,
            self.channels,
            isi=config.isi,
            start_time_ms=int(self.created_at * 1000),
            rng=rng or random.SystemRandom(),
            match_probability=match_probability,
        )
        self.responses: List[UserResponse] = []
        self.current_trial = 0
        self.delivered = 0
        self.state = SessionState.CREATED
        self.started_at: Optional[float] = None
        self.ended_at: Optional[float] = None
        self.end_reason: Optional[str] = None
        self.result: Optional[BlockResult] = None

        self._sender = sender
        self._on_delivery_failure = on_delivery_failure
        self._on_complete = on_complete
        self._adjudicator = adjudicator or DifficultyAdjudicator()
        self._clock = clock
        self._log = ResponseLog()
        self._answered: Set[int] = set()
        # One past the furthest trial answered; running accuracy scores up to here.
        self._scored_upto = 0
        self._lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._wake: Optional[asyncio.Event] = None
        # A paused delivery task that may still be finishing its last send.
        self._retiring: Optional[asyncio.Task] = None
        self._finalizer: Optional[asyncio.Task] = None

    @property
    def block_size(self) -> int:
        return len(self.stimuli)

    @property
    def is_active(self) -> bool:
        return not self.state.is_terminal

    @property
    def delivery_task(self) -> Optional[asyncio.Task]:
        return self._task

    # Lifecycle

    async def start(self) -> None:
        async with self._lock:
            self._require(SessionState.CREATED, "start")
            self.state = SessionState.RUNNING
            self.started_at = self._clock()
            self._arm_delivery()
        logger.info(
            "Session %s started (mode=%s, n=%d, trials=%d)",
            self.session_id, self.config.mode.value, self.config.n_level, self.block_size,
        )

    async def pause(self) -> None:
        async with self._lock:
            self._require(SessionState.RUNNING, "pause")
            self.state = SessionState.PAUSED
            task = self._detach_delivery()
            await self._cancel_finalizer()
        # An in-flight send is allowed to finish so no stimulus is half delivered.
        await _drain(task)
        logger.info("Session %s paused at stimulus %d", self.session_id, self.delivered)

    async def resume(self) -> None:
        async with self._lock:
            self._require(SessionState.PAUSED, "resume")
            self.state = SessionState.RUNNING
            previous = self._retiring
        await _drain(previous)
        async with self._lock:
            if self.state is SessionState.RUNNING:
                if self._retiring is previous:
                    self._retiring = None
                self._arm_delivery()
                if self.current_trial >= self.block_size:
                    self._arm_finalizer()
        logger.info("Session %s resumed at stimulus %d", self.session_id, self.delivered)

    async def end(self, reason: str = "ended") -> None:
        if not await self.end_if_active(reason):
            raise SessionNotActive(f"Session {self.session_id} is already {self.state.value}")

    async def end_if_active(self, reason: str = "ended") -> bool:
        """End the session unless it already reached a terminal state; True if it was ended here."""
        async with self._lock:
            if self.state.is_terminal:
                return False
            await self._cancel_delivery()
            await self._cancel_finalizer()
            self._finish(SessionState.ENDED, reason)
        logger.info("Session %s ended (%s)", self.session_id, reason)
        return True

    async def respond(self, response: UserResponse) -> RespondResult:
        async with self._lock:
            if self.state is not SessionState.RUNNING:
                raise SessionNotActive(
                    f"Session {self.session_id} is {self.state.value}, not accepting responses"
                )
            if response.trial_index >= self.block_size:
                raise ValidationError(
                    f"trial_index {response.trial_index} outside block of {self.block_size}"
                )
            if response.channel not in self.channels:
                raise ValidationError(f"Channel {response.channel.value} is not active in this session")

            self.responses.append(response)
            self._log.record(response)
            if response.trial_index not in self._answered:
                self._answered.add(response.trial_index)
                self.current_trial += 1
                self._scored_upto = max(self._scored_upto, response.trial_index + 1)

            logger.debug(
                "Session %s response trial=%d channel=%s match=%s",
                self.session_id, response.trial_index, response.channel.value, response.is_match,
            )

            if self.current_trial >= self.block_size:
                if self.config.isi <= 0 or self._final_trial_settled():
                    await self._cancel_delivery()
                    await self._cancel_finalizer()
                    result = self._complete()
                    logger.info(
                        "Session %s completed with accuracy %s -> %s",
                        self.session_id, result.accuracy, result.suggestion.value,
                    )
                    return RespondResult(
                        accuracy=result.accuracy,
                        trial=self.current_trial,
                        completed=True,
                        result=result,
                    )
                self._arm_finalizer()

            return RespondResult(
                accuracy=self.accuracy(),
                trial=self.current_trial,
                next_stimulus=(
                    self.stimuli[self.current_trial] if self.current_trial < self.block_size else None
                ),
            )

    # Scoring

    def accuracy(self, window: Optional[int] = None) -> Dict[str, float]:
        """Accuracy over the trials up to the furthest one answered."""
        return evaluate_all(
            self.stimuli,
            self._log,
            self.config.n_level,
            self.channels,
            upto=self._scored_upto,
            window=window,
        )

    def _block_result(self) -> BlockResult:
        final = evaluate_all(self.stimuli, self._log, self.config.n_level, self.channels)
        windowed = evaluate_all(
            self.stimuli,
            self._log,
            self.config.n_level,
            self.channels,
            window=self.config.evaluation_window,
        )
        adjustment = self._adjudicator.adjust(windowed, self.config.n_level, self.channels)
        return BlockResult(
            session_id=self.session_id,
            accuracy=final,
            suggestion=adjustment.action,
            new_level=adjustment.new_level,
        )

    def stats(self) -> SessionStats:
        start = self.started_at or self.created_at
        end = self.ended_at or self._clock()
        return SessionStats(
            id=self.session_id,
            state=self.state,
            duration_ms=int(max(0.0, end - start) * 1000),
            trials_completed=self.current_trial,
            stimuli_delivered=self.delivered,
            accuracy=self.result.accuracy if self.result else self.accuracy(),
            end_reason=self.end_reason,
            result=self.result,
        )

    def snapshot(self) -> Dict[str, Any]:
        """Wire form of stats(), camelCase."""
        return self.stats().summary()

    def to_record(self) -> SessionRecord:
        if not self.state.is_terminal:
            raise SessionNotActive(f"Session {self.session_id} is still {self.state.value}")
        trials = build_trial_records(
            self.session_id, self.stimuli, self._log, self.config.n_level, self.channels
        )
        return SessionRecord(
            session_id=self.session_id,
            started_at=_utc(self.started_at or self.created_at),
            ended_at=_utc(self.ended_at) if self.ended_at else None,
            mode=self.config.mode,
            n_level=self.config.n_level,
            block_size=self.block_size,
            isi=self.config.isi,
            end_reason=self.end_reason,
            trials=trials,
            summary=summarize(trials),
        )

    # Internals; callers hold self._lock

    def _require(self, expected: SessionState, operation: str) -> None:
        if self.state is not expected:
            raise InvalidTransition(operation, self.state.value)

    def _finish(self, state: SessionState, reason: str) -> None:
        self.state = state
        self.ended_at = self._clock()
        self.end_reason = reason

    def _complete(self) -> BlockResult:
        self._finish(SessionState.COMPLETED, "completed")
        self.result = self._block_result()
        return self.result

    def _final_trial_settled(self) -> bool:
        last = self.block_size - 1
        return all(self._log.get(channel, last) is not None for channel in self.channels)

    def _arm_delivery(self) -> None:
        if self._sender is None or self.delivered >= self.block_size:
            return
        if self._task is not None and not self._task.done():
            return
        self._wake = asyncio.Event()
        self._task = asyncio.create_task(
            self._deliver(self._wake), name=f"nback-delivery-{self.session_id}"
        )

    def _detach_delivery(self) -> Optional[asyncio.Task]:
        """Tell the delivery task to stop after its current send; returns it."""
        task, self._task = self._task, None
        if self._wake is not None:
            self._wake.set()
            self._wake = None
        if task is not None:
            self._retiring = task
        return task

    async def _cancel_delivery(self) -> None:
        self._detach_delivery()
        retiring, self._retiring = self._retiring, None
        await _cancel(retiring)

    def _arm_finalizer(self) -> None:
        if self._finalizer is not None and not self._finalizer.done():
            return
        self._finalizer = asyncio.create_task(
            self._finalize_after(self.config.isi), name=f"nback-finalize-{self.session_id}"
        )

    async def _cancel_finalizer(self) -> None:
        task, self._finalizer = self._finalizer, None
        await _cancel(task)

    # Background tasks

    async def _deliver(self, wake: asyncio.Event) -> None:
        while True:
            async with self._lock:
                if (
                    self.state is not SessionState.RUNNING
                    or wake.is_set()
                    or self.delivered >= self.block_size
                ):
                    return
                packet = self.stimuli[self.delivered]
                self.delivered += 1
            try:
                await self._sender(Stimulus(data=StimulusData(packet=packet)))
            except Exception as exc:
                await self._delivery_failed(packet, exc)
                return
            logger.debug("Session %s delivered stimulus %d", self.session_id, packet.index)
            if self.delivered >= self.block_size:
                return
            if self.config.isi <= 0:
                await asyncio.sleep(0)
                continue
            try:
                await asyncio.wait_for(wake.wait(), timeout=self.config.isi)
            except asyncio.TimeoutError:
                pass

    async def _delivery_failed(self, packet: StimulusPacket, exc: Exception) -> None:
        failure = DeliveryFailure(f"Could not deliver stimulus {packet.index}: {exc}")
        current = asyncio.current_task()
        async with self._lock:
            if self.state.is_terminal:
                return
            if self._task is current:
                self._task = None
                self._wake = None
            if self._retiring is current:
                self._retiring = None
            await self._cancel_finalizer()
            self._finish(SessionState.ENDED, "delivery_failure")

        logger.warning("Session %s ended: %s", self.session_id, failure.message)
        if self._on_delivery_failure is not None:
            try:
                await self._on_delivery_failure(self, failure)
            except Exception:
                logger.exception("Delivery failure handler raised for session %s", self.session_id)

    async def _finalize_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        async with self._lock:
            if self._finalizer is asyncio.current_task():
                self._finalizer = None
            if self.state is not SessionState.RUNNING or self.current_trial < self.block_size:
                return
            await self._cancel_delivery()
            result = self._complete()

        logger.info(
            "Session %s completed after final-trial window with accuracy %s -> %s",
            self.session_id, result.accuracy, result.suggestion.value,
        )
        if self._on_complete is not None:
            try:
                await self._on_complete(self, result)
            except Exception:
                logger.exception("Completion handler raised for session %s", self.session_id)


async def _cancel(task: Optional[asyncio.Task]) -> None:
    if task is None or task is asyncio.current_task() or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


async def _drain(task: Optional[asyncio.Task]) -> None:
    if task is None or task is asyncio.current_task():
        return
    try:
        await task
    except asyncio.CancelledError:
        pass


def _utc(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)
