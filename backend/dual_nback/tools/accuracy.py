"""
Scoring of match / no-match claims against the n-back ground truth.

Only trials at or past the lag window are scorable. A trial with no claim
for a channel counts as an implicit "no match" on that channel.
"""

from typing import Dict, Iterable, Optional, Sequence, Union

import numpy as np

from dual_nback.models.game import StimulusPacket, StreamType, UserResponse


class ResponseLog:
    """Latest match claim per (channel, trial), built as responses arrive."""

    def __init__(self, responses: Optional[Iterable[UserResponse]] = None):
        self._claims: Dict[StreamType, Dict[int, UserResponse]] = {}
        for response in responses or []:
            self.record(response)

    def record(self, response: UserResponse) -> None:
        # Last write wins for a repeated (trial, channel) key.
        self._claims.setdefault(StreamType(response.channel), {})[response.trial_index] = response

    def claim(self, channel: StreamType, trial_index: int) -> bool:
        response = self._claims.get(StreamType(channel), {}).get(trial_index)
        return bool(response and response.is_match)

    def get(self, channel: StreamType, trial_index: int) -> Optional[UserResponse]:
        return self._claims.get(StreamType(channel), {}).get(trial_index)


Responses = Union[ResponseLog, Iterable[UserResponse]]


def _as_log(responses: Responses) -> ResponseLog:
    if isinstance(responses, ResponseLog):
        return responses
    return ResponseLog(responses)


def ground_truth(sequence: Sequence[StimulusPacket], n_level: int, channel: StreamType) -> np.ndarray:
    """Boolean vector, element k is whether trial n_level + k matches trial k."""
    if len(sequence) <= n_level:
        return np.zeros(0, dtype=bool)
    values = np.array([packet.value(channel) for packet in sequence], dtype=object)
    return np.asarray(values[n_level:] == values[:-n_level], dtype=bool)


def correctness(
    sequence: Sequence[StimulusPacket],
    responses: Responses,
    n_level: int,
    channel: StreamType,
    *,
    upto: Optional[int] = None,
    window: Optional[int] = None,
) -> np.ndarray:
    """Per scorable trial, whether the claim on ``channel`` agreed with ground truth."""
    log = _as_log(responses)
    end = len(sequence) if upto is None else max(0, min(upto, len(sequence)))
    truth = ground_truth(sequence[:end], n_level, channel)
    if truth.size == 0:
        return truth
    claims = np.array([log.claim(channel, i) for i in range(n_level, end)], dtype=bool)
    correct = claims == truth
    if window is not None and window > 0:
        correct = correct[-window:]
    return correct


def evaluate(
    sequence: Sequence[StimulusPacket],
    responses: Responses,
    n_level: int,
    channel: StreamType,
    *,
    upto: Optional[int] = None,
    window: Optional[int] = None,
) -> float:
    """Accuracy in [0, 1] for one channel, rounded to 2 decimals; 0.0 with nothing to score."""
    correct = correctness(sequence, responses, n_level, channel, upto=upto, window=window)
    if correct.size == 0:
        return 0.0
    return round(float(correct.mean()), 2)


def evaluate_all(
    sequence: Sequence[StimulusPacket],
    responses: Responses,
    n_level: int,
    channels: Sequence[StreamType],
    *,
    upto: Optional[int] = None,
    window: Optional[int] = None,
) -> Dict[str, float]:
    """Per-channel accuracy keyed by channel name, plus ``combined`` (their mean)."""
    log = _as_log(responses)
    report = {
        StreamType(channel).value: evaluate(sequence, log, n_level, channel, upto=upto, window=window)
        for channel in channels
    }
    report["combined"] = round(float(np.mean(list(report.values()))), 2) if report else 0.0
    return report
