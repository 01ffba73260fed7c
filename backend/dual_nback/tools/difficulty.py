from typing import Mapping, Optional, Sequence

from dual_nback.models.game import MAX_N_LEVEL, MIN_N_LEVEL, Adjustment, StreamType, Suggestion

PROMOTION_THRESHOLD = 0.8
DEMOTION_THRESHOLD = 0.5


class DifficultyAdjudicator:
    """Advises the n-level for the next block. Never touches a running session."""

    def __init__(
        self,
        promotion_threshold: float = PROMOTION_THRESHOLD,
        demotion_threshold: float = DEMOTION_THRESHOLD,
        min_level: int = MIN_N_LEVEL,
        max_level: int = MAX_N_LEVEL,
    ):
        if demotion_threshold > promotion_threshold:
            raise ValueError("demotion_threshold must not exceed promotion_threshold")
        self.promotion_threshold = promotion_threshold
        self.demotion_threshold = demotion_threshold
        self.min_level = min_level
        self.max_level = max_level

    def suggest(
        self,
        accuracy: Mapping[str, float],
        channels: Optional[Sequence[StreamType]] = None,
    ) -> Suggestion:
        if channels is None:
            scores = [value for key, value in accuracy.items() if key != "combined"]
        else:
            scores = [accuracy.get(StreamType(c).value, 0.0) for c in channels]

        if not scores:
            return Suggestion.MAINTAIN
        if all(score >= self.promotion_threshold for score in scores):
            return Suggestion.PROMOTE
        if any(score < self.demotion_threshold for score in scores):
            return Suggestion.DEMOTE
        return Suggestion.MAINTAIN

    def next_level(self, n_level: int, suggestion: Suggestion) -> int:
        if suggestion is Suggestion.PROMOTE:
            n_level += 1
        elif suggestion is Suggestion.DEMOTE:
            n_level -= 1
        return max(self.min_level, min(self.max_level, n_level))

    def adjust(
        self,
        accuracy: Mapping[str, float],
        n_level: int,
        channels: Optional[Sequence[StreamType]] = None,
    ) -> Adjustment:
        suggestion = self.suggest(accuracy, channels)
        return Adjustment(action=suggestion, new_level=self.next_level(n_level, suggestion))
