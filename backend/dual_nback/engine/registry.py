"""
Session registry.

Maps connection identity to at most one game session, forwards channel
commands to the owning session and emits the resulting events. One instance
is created per process by the app factory and handed to the API layers.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from pydantic import ValidationError as PydanticValidationError

from dual_nback.api.protocol import (
    BlockEnd,
    BlockEndData,
    ScoreUpdate,
    ScoreUpdateData,
    SessionEnd,
    SessionEndData,
    SessionStart,
    SessionStartData,
    StartGameData,
)
from dual_nback.config import Settings
from dual_nback.engine.session import GameSession, Sender
from dual_nback.errors import DeliveryFailure, SessionNotFound, ValidationError
from dual_nback.models.game import BlockResult, GameConfig, Mode, RespondResult, UserResponse
from dual_nback.tools.difficulty import DifficultyAdjudicator
from dual_nback.tools.sequence_generator import RandomSource

logger = logging.getLogger(__name__)


@dataclass
class ConnectionState:
    connection_id: str
    send: Sender
    session_id: Optional[str] = None


class SessionRegistry:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        rng_factory: Optional[Callable[[], RandomSource]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings or Settings()
        self.adjudicator = DifficultyAdjudicator(
            promotion_threshold=self.settings.promotion_threshold,
            demotion_threshold=self.settings.demotion_threshold,
            min_level=self.settings.min_n_level,
            max_level=self.settings.max_n_level,
        )
        self._rng_factory = rng_factory or random.SystemRandom
        self._clock = clock
        self._sessions: Dict[str, GameSession] = {}
        self._connections: Dict[str, ConnectionState] = {}
        self._sweeper: Optional[asyncio.Task] = None

    # Sessions

    def build_config(
        self,
        mode: Optional[Mode] = None,
        n_level: Optional[int] = None,
        block_size: Optional[int] = None,
        isi: Optional[float] = None,
    ) -> GameConfig:
        s = self.settings
        try:
            config = GameConfig(
                mode=mode or s.default_mode,
                n_level=s.default_n_level if n_level is None else n_level,
                block_size=s.block_size if block_size is None else block_size,
                isi=s.isi_seconds if isi is None else isi,
                evaluation_window=s.evaluation_window,
            )
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid game config: {exc.errors(include_url=False)}") from exc

        if not s.min_n_level <= config.n_level <= s.max_n_level:
            raise ValidationError(
                f"n_level must be between {s.min_n_level} and {s.max_n_level}, got {config.n_level}"
            )
        if config.isi == 0 and not s.test_mode:
            raise ValidationError("isi must be > 0")
        return config

    def create_session(
        self,
        config: GameConfig,
        sender: Optional[Sender] = None,
    ) -> GameSession:
        session = GameSession(
            config,
            sender=sender,
            on_delivery_failure=self._handle_delivery_failure,
            on_complete=self._handle_completion,
            rng=self._rng_factory(),
            adjudicator=self.adjudicator,
            match_probability=self.settings.match_probability,
            clock=self._clock,
        )
        self._sessions[session.session_id] = session
        logger.info(
            "Created session %s (mode=%s, n=%d, trials=%d, isi=%.2fs)",
            session.session_id, config.mode.value, config.n_level, config.block_size, config.isi,
        )
        return session

    def get(self, session_id: str) -> GameSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    async def end_session(self, session_id: str, reason: str = "ended") -> GameSession:
        session = self.get(session_id)
        await session.end(reason)
        self._unbind_session(session_id)
        return session

    def stats(self) -> Dict[str, int]:
        return {
            "total_sessions": len(self._sessions),
            "active_sessions": sum(1 for s in self._sessions.values() if s.is_active),
            "connected_clients": len(self._connections),
            "active_games": sum(1 for c in self._connections.values() if c.session_id),
        }

    # Channel commands

    def on_connect(self, connection_id: str, send: Sender) -> None:
        self._connections[connection_id] = ConnectionState(connection_id, send)
        logger.info("Client connected: %s", connection_id)

    async def on_start_command(self, connection_id: str, data: StartGameData) -> GameSession:
        conn = self._connection(connection_id)
        config = self.build_config(data.mode, data.n_level, data.block_size, data.isi)

        previous = self._sessions.get(conn.session_id) if conn.session_id else None
        if previous is not None:
            await previous.end_if_active("replaced")
        conn.session_id = None

        session = self.create_session(config, sender=conn.send)
        conn.session_id = session.session_id
        await conn.send(
            SessionStart(
                data=SessionStartData(
                    session_id=session.session_id,
                    config=config,
                    total_trials=session.block_size,
                )
            )
        )
        await session.start()
        return session

    async def on_response(self, connection_id: str, response: UserResponse) -> RespondResult:
        conn = self._connection(connection_id)
        session = self._bound_session(conn)
        result = await session.respond(response)

        await conn.send(ScoreUpdate(data=ScoreUpdateData(accuracy=result.accuracy, trial=result.trial)))
        if result.completed and result.result is not None:
            conn.session_id = None
            await self._emit_completion(conn, result.result)
        return result

    async def on_pause(self, connection_id: str) -> None:
        await self._bound_session(self._connection(connection_id)).pause()

    async def on_resume(self, connection_id: str) -> None:
        await self._bound_session(self._connection(connection_id)).resume()

    async def on_end(self, connection_id: str) -> None:
        conn = self._connection(connection_id)
        session = self._bound_session(conn)
        await session.end("ended")
        conn.session_id = None
        await conn.send(SessionEnd(data=SessionEndData(reason="ended", accuracy=session.accuracy())))

    async def on_disconnect(self, connection_id: str) -> None:
        conn = self._connections.pop(connection_id, None)
        if conn is None:
            return
        session = self._sessions.get(conn.session_id) if conn.session_id else None
        if session is not None:
            await session.end_if_active("disconnected")
        logger.info("Client disconnected: %s", connection_id)

    # Cleanup

    def sweep(self, now: Optional[float] = None) -> int:
        """Drop terminal sessions whose end is older than the retention threshold."""
        now = self._clock() if now is None else now
        cutoff = now - self.settings.retention_seconds
        expired = [
            sid for sid, s in self._sessions.items()
            if s.state.is_terminal and s.ended_at is not None and s.ended_at < cutoff
        ]
        for sid in expired:
            del self._sessions[sid]
        if expired:
            logger.info("Swept %d old game sessions", len(expired))
        return len(expired)

    def start_sweeper(self, interval: Optional[float] = None) -> asyncio.Task:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(
                self._sweep_forever(interval or self.settings.sweep_interval_seconds),
                name="nback-session-sweeper",
            )
        return self._sweeper

    async def shutdown(self) -> None:
        sweeper, self._sweeper = self._sweeper, None
        if sweeper is not None:
            sweeper.cancel()
            try:
                await sweeper
            except asyncio.CancelledError:
                pass
        for session in list(self._sessions.values()):
            await session.end_if_active("shutdown")

    async def _sweep_forever(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                self.sweep()
            except Exception:
                logger.exception("Session sweep failed")

    # Internals

    def _connection(self, connection_id: str) -> ConnectionState:
        conn = self._connections.get(connection_id)
        if conn is None:
            raise SessionNotFound(f"connection {connection_id}")
        return conn

    def _bound_session(self, conn: ConnectionState) -> GameSession:
        if conn.session_id is None:
            raise SessionNotFound(f"no session bound to connection {conn.connection_id}")
        return self.get(conn.session_id)

    def _unbind_session(self, session_id: str) -> None:
        for conn in self._connections.values():
            if conn.session_id == session_id:
                conn.session_id = None

    async def _emit_completion(self, conn: ConnectionState, block: BlockResult) -> None:
        await conn.send(
            BlockEnd(
                data=BlockEndData(
                    session_id=block.session_id,
                    accuracy=block.accuracy,
                    suggestion=block.suggestion,
                    new_level=block.new_level,
                )
            )
        )
        await conn.send(
            SessionEnd(
                data=SessionEndData(
                    reason="completed",
                    accuracy=block.accuracy,
                    suggestion=block.suggestion,
                )
            )
        )

    async def _handle_completion(self, session: GameSession, block: BlockResult) -> None:
        # Completion that happened off the response path, when the final-trial window closed.
        for conn in list(self._connections.values()):
            if conn.session_id == session.session_id:
                conn.session_id = None
                await self._emit_completion(conn, block)

    async def _handle_delivery_failure(self, session: GameSession, failure: DeliveryFailure) -> None:
        # Same as a disconnect: the owning connection can no longer be reached.
        for connection_id, conn in list(self._connections.items()):
            if conn.session_id == session.session_id:
                self._connections.pop(connection_id, None)
                logger.warning(
                    "Dropped connection %s after delivery failure: %s", connection_id, failure.message
                )
