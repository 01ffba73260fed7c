import math
from typing import List, Sequence

from dual_nback.models.game import StimulusPacket, StreamType
from dual_nback.models.history import SessionSummary, TrialRecord
from dual_nback.tools.accuracy import ResponseLog, ground_truth

SCORE_CORRECT = 1
SCORE_FALSE_ALARM = -1
SCORE_MISS = 0
STREAK_MULTIPLIER = 0.1
MAX_STREAK_BONUS = 2.0


def build_trial_records(
    session_id: str,
    stimuli: Sequence[StimulusPacket],
    log: ResponseLog,
    n_level: int,
    channels: Sequence[StreamType],
) -> List[TrialRecord]:
    """One row per (trial, channel), in presentation order."""
    truths = {StreamType(c): ground_truth(stimuli, n_level, c) for c in channels}
    records = []
    for packet in stimuli:
        for channel in channels:
            channel = StreamType(channel)
            response = log.get(channel, packet.index)
            reacted = bool(response and response.is_match)
            correct = None
            if packet.index >= n_level:
                correct = reacted == bool(truths[channel][packet.index - n_level])
            records.append(
                TrialRecord(
                    trial_id=f"{session_id}-{packet.index}-{channel.value}",
                    trial_index=packet.index,
                    stream=channel,
                    n=n_level,
                    stimulus_value=packet.value(channel),
                    timestamp=float(packet.scheduled_timestamp),
                    reacted=reacted,
                    correct=correct,
                    reaction_time=response.reaction_time_ms if reacted else None,
                )
            )
    return records


def calculate_score(trials: Sequence[TrialRecord]) -> int:
    score = 0
    streak = 0
    for trial in trials:
        if trial.correct is None:
            continue
        if trial.correct:
            streak += 1
            score += SCORE_CORRECT + math.floor(min(streak * STREAK_MULTIPLIER, MAX_STREAK_BONUS))
        elif trial.reacted:
            score += SCORE_FALSE_ALARM
            streak = 0
        else:
            score += SCORE_MISS
            streak = 0
    return max(0, score)


def summarize(trials: Sequence[TrialRecord]) -> SessionSummary:
    scored = [t for t in trials if t.correct is not None]
    correct = sum(1 for t in scored if t.correct)
    false_alarms = sum(1 for t in scored if t.reacted and not t.correct)
    misses = sum(1 for t in scored if not t.reacted and not t.correct)
    reaction_times = [t.reaction_time for t in trials if t.reaction_time]

    return SessionSummary(
        total_trials=len(trials),
        correct_responses=correct,
        false_alarms=false_alarms,
        misses=misses,
        accuracy=round(correct / len(scored), 2) if scored else 0.0,
        average_reaction_time=round(sum(reaction_times) / len(reaction_times), 1) if reaction_times else 0.0,
        max_n=max((t.n for t in trials), default=0),
        final_score=calculate_score(trials),
    )
