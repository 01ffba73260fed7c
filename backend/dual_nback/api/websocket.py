import json
import logging
import uuid
from typing import Dict

from fastapi import WebSocket, WebSocketDisconnect

from dual_nback.api.protocol import (
    EndGame,
    ErrorData,
    ErrorEvent,
    InboundEvent,
    Outbound,
    PauseGame,
    ResumeGame,
    StartGame,
    UserResponseEvent,
    parse_inbound,
)
from dual_nback.engine.registry import SessionRegistry
from dual_nback.errors import DeliveryFailure, NBackError

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Owns the websocket objects and turns them into registry senders."""

    def __init__(self, registry: SessionRegistry):
        self.registry = registry
        self.active_connections: Dict[str, WebSocket] = {}

    async def connect(self, websocket: WebSocket) -> str:
        await websocket.accept()
        connection_id = str(uuid.uuid4())
        self.active_connections[connection_id] = websocket

        async def send(event: Outbound) -> None:
            await self.send_event(connection_id, event)

        self.registry.on_connect(connection_id, send)
        return connection_id

    async def disconnect(self, connection_id: str) -> None:
        self.active_connections.pop(connection_id, None)
        await self.registry.on_disconnect(connection_id)

    async def send_event(self, connection_id: str, event: Outbound) -> None:
        ws = self.active_connections.get(connection_id)
        if ws is None:
            raise DeliveryFailure(f"Connection {connection_id} is gone")
        await ws.send_json(event.to_wire())

    async def send_error(self, connection_id: str, code: str, message: str) -> None:
        await self.send_event(connection_id, ErrorEvent(data=ErrorData(code=code, message=message)))

    async def dispatch(self, connection_id: str, event: InboundEvent) -> None:
        if isinstance(event, StartGame):
            await self.registry.on_start_command(connection_id, event.data)
        elif isinstance(event, UserResponseEvent):
            await self.registry.on_response(connection_id, event.data)
        elif isinstance(event, PauseGame):
            await self.registry.on_pause(connection_id)
        elif isinstance(event, ResumeGame):
            await self.registry.on_resume(connection_id)
        elif isinstance(event, EndGame):
            await self.registry.on_end(connection_id)
        else:
            raise TypeError(f"Unhandled inbound event {type(event).__name__}")

    async def handle_message(self, connection_id: str, raw: str) -> None:
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            await self.send_error(connection_id, "validation_error", "Invalid JSON")
            return

        try:
            await self.dispatch(connection_id, parse_inbound(payload))
        except DeliveryFailure:
            raise
        except NBackError as exc:
            logger.warning("Rejected message on %s: %s", connection_id, exc.message)
            await self.send_event(connection_id, ErrorEvent(data=ErrorData(**exc.to_payload())))
        except Exception:
            logger.exception("Failed to handle message on %s", connection_id)
            await self.send_error(connection_id, "internal_error", "Internal server error")


async def websocket_endpoint(websocket: WebSocket, manager: ConnectionManager) -> None:
    """WebSocket endpoint for one n-back client."""
    connection_id = await manager.connect(websocket)
    try:
        while True:
            raw = await websocket.receive_text()
            await manager.handle_message(connection_id, raw)
    except WebSocketDisconnect:
        pass
    except DeliveryFailure as exc:
        logger.warning("Closing %s: %s", connection_id, exc.message)
    finally:
        await manager.disconnect(connection_id)
