"""
Websocket message protocol.

Every message is ``{"type": ..., "data": {...}, "timestamp": ...}``. Inbound
and outbound messages are closed unions discriminated on ``type``, so each
event name maps to exactly one model.
"""

from datetime import datetime, timezone
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from dual_nback.errors import ValidationError
from dual_nback.models.game import (
    GameConfig,
    Mode,
    StimulusPacket,
    Suggestion,
    UserResponse,
    WireModel,
)


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class Empty(WireModel):
    pass


# Inbound

class StartGameData(WireModel):
    mode: Optional[Mode] = None
    n_level: Optional[int] = None
    block_size: Optional[int] = None
    isi: Optional[float] = None


class StartGame(BaseModel):
    type: Literal["start_game"]
    data: StartGameData = Field(default_factory=StartGameData)
    timestamp: Optional[str] = None


class UserResponseEvent(BaseModel):
    type: Literal["user_response"]
    data: UserResponse
    timestamp: Optional[str] = None


class PauseGame(BaseModel):
    type: Literal["pause_game"]
    data: Empty = Field(default_factory=Empty)
    timestamp: Optional[str] = None


class ResumeGame(BaseModel):
    type: Literal["resume_game"]
    data: Empty = Field(default_factory=Empty)
    timestamp: Optional[str] = None


class EndGame(BaseModel):
    type: Literal["end_game"]
    data: Empty = Field(default_factory=Empty)
    timestamp: Optional[str] = None


InboundEvent = Annotated[
    Union[StartGame, UserResponseEvent, PauseGame, ResumeGame, EndGame],
    Field(discriminator="type"),
]

_inbound = TypeAdapter(InboundEvent)


def parse_inbound(payload: Any) -> InboundEvent:
    try:
        return _inbound.validate_python(payload)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid message: {exc.errors(include_url=False)}") from exc


# Outbound

class OutboundEvent(BaseModel):
    timestamp: str = Field(default_factory=utc_timestamp)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class SessionStartData(WireModel):
    session_id: str
    config: GameConfig
    total_trials: int


class SessionStart(OutboundEvent):
    type: Literal["session_start"] = "session_start"
    data: SessionStartData


class StimulusData(WireModel):
    packet: StimulusPacket


class Stimulus(OutboundEvent):
    type: Literal["stimulus"] = "stimulus"
    data: StimulusData


class ScoreUpdateData(WireModel):
    accuracy: Dict[str, float]
    trial: int


class ScoreUpdate(OutboundEvent):
    type: Literal["score_update"] = "score_update"
    data: ScoreUpdateData


class BlockEndData(WireModel):
    session_id: str
    accuracy: Dict[str, float]
    suggestion: Suggestion
    new_level: int


class BlockEnd(OutboundEvent):
    type: Literal["block_end"] = "block_end"
    data: BlockEndData


class SessionEndData(WireModel):
    reason: str
    accuracy: Optional[Dict[str, float]] = None
    suggestion: Optional[Suggestion] = None


class SessionEnd(OutboundEvent):
    type: Literal["session_end"] = "session_end"
    data: SessionEndData


class ErrorData(WireModel):
    code: str
    message: str


class ErrorEvent(OutboundEvent):
    type: Literal["error"] = "error"
    data: ErrorData


Outbound = Union[SessionStart, Stimulus, ScoreUpdate, BlockEnd, SessionEnd, ErrorEvent]
