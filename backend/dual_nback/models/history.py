from datetime import datetime
from typing import List, Optional, Union

from pydantic import Field

from dual_nback.models.game import Mode, StreamType, WireModel


class TrialRecord(WireModel):
    trial_id: str
    trial_index: int = Field(ge=0)
    stream: StreamType
    n: int = Field(ge=1, le=10)
    stimulus_value: Union[int, float, str]
    timestamp: float
    reacted: bool = False
    # None for trials inside the lag window, which have no ground truth.
    correct: Optional[bool] = None
    reaction_time: Optional[float] = None


class SessionSummary(WireModel):
    total_trials: int = 0
    correct_responses: int = 0
    false_alarms: int = 0
    misses: int = 0
    accuracy: float = 0.0
    average_reaction_time: float = 0.0
    max_n: int = 0
    final_score: int = 0


class SessionRecord(WireModel):
    session_id: str = Field(min_length=1)
    started_at: datetime
    ended_at: Optional[datetime] = None
    mode: Mode
    n_level: int = Field(ge=1, le=10)
    block_size: int = Field(gt=0)
    isi: float = Field(ge=0)
    end_reason: Optional[str] = None
    trials: List[TrialRecord] = Field(default_factory=list)
    summary: Optional[SessionSummary] = None


class SyncRequest(WireModel):
    session: SessionRecord
