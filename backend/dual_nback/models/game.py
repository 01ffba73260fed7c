import time
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class StreamType(str, Enum):
    POSITION = "position"
    LETTER = "letter"
    COLOR = "color"
    TONE = "tone"
    SHAPE = "shape"


class Mode(str, Enum):
    DUAL = "dual"
    QUAD = "quad"
    PENTA = "penta"


MODE_CHANNELS: Dict[Mode, List[StreamType]] = {
    Mode.DUAL: [StreamType.POSITION, StreamType.LETTER],
    Mode.QUAD: [StreamType.POSITION, StreamType.LETTER, StreamType.COLOR, StreamType.TONE],
    Mode.PENTA: [
        StreamType.POSITION,
        StreamType.LETTER,
        StreamType.COLOR,
        StreamType.TONE,
        StreamType.SHAPE,
    ],
}

MIN_N_LEVEL = 1
MAX_N_LEVEL = 10


class SessionState(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    ENDED = "ended"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.COMPLETED, SessionState.ENDED)


class Suggestion(str, Enum):
    PROMOTE = "promote"
    DEMOTE = "demote"
    MAINTAIN = "maintain"


class WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class GameConfig(WireModel):
    mode: Mode = Mode.DUAL
    channels: List[StreamType] = Field(default_factory=list)
    n_level: int = Field(default=2, ge=MIN_N_LEVEL, le=MAX_N_LEVEL)
    block_size: int = Field(default=20, gt=0)
    isi: float = Field(default=2.5, ge=0)
    evaluation_window: int = Field(default=20, gt=0)

    @model_validator(mode="after")
    def _default_channels(self) -> "GameConfig":
        if not self.channels:
            self.channels = list(MODE_CHANNELS[self.mode])
        return self


StimulusValue = Union[int, float, str]


class StimulusPacket(WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    index: int
    position: Optional[int] = None
    letter: Optional[str] = None
    color: Optional[str] = None
    tone: Optional[float] = None
    shape: Optional[str] = None
    scheduled_timestamp: int = 0

    def value(self, channel: StreamType) -> Optional[StimulusValue]:
        return getattr(self, StreamType(channel).value)


def _now_ms() -> float:
    return time.time() * 1000


class UserResponse(WireModel):
    channel: StreamType
    is_match: bool = False
    reaction_time_ms: float = Field(default=0.0, ge=0)
    timestamp: float = Field(default_factory=_now_ms)
    trial_index: int = Field(ge=0)


class Adjustment(BaseModel):
    action: Suggestion
    new_level: int


class BlockResult(WireModel):
    session_id: str
    accuracy: Dict[str, float]
    suggestion: Suggestion
    new_level: int


class RespondResult(WireModel):
    accuracy: Dict[str, float]
    trial: int
    completed: bool = False
    next_stimulus: Optional[StimulusPacket] = None
    result: Optional[BlockResult] = None


class SessionStats(WireModel):
    id: str
    state: SessionState
    duration_ms: int
    trials_completed: int
    stimuli_delivered: int
    accuracy: Dict[str, float]
    end_reason: Optional[str] = None
    result: Optional[BlockResult] = None

    def summary(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")
