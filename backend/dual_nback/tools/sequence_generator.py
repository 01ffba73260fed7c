import random
from typing import Dict, List, Optional, Protocol, Sequence

from dual_nback.models.game import StimulusPacket, StimulusValue, StreamType

# 3x3 grid, numbered row-major
POSITIONS: List[int] = list(range(9))

CONSONANTS: List[str] = [
    "B", "C", "D", "F", "G", "H", "J", "K", "L", "M",
    "N", "P", "Q", "R", "S", "T", "V", "W", "X", "Z",
]

COLOR_PALETTE: List[str] = [
    "#E53E3E",  # red
    "#3182CE",  # blue
    "#38A169",  # green
    "#D69E2E",  # yellow
    "#805AD5",  # purple
    "#DD6B20",  # orange
    "#319795",  # teal
    "#D53F8C",  # pink
    "#4A5568",  # gray
]

# C4 to G#4
TONE_FREQUENCIES: List[float] = [
    261.63, 277.18, 293.66, 311.13, 329.63, 349.23, 369.99, 392.00, 415.30,
]

SHAPES: List[str] = [
    "circle", "square", "triangle", "star", "hexagon",
    "pentagon", "heart", "diamond", "cross",
]

ALPHABETS: Dict[StreamType, Sequence[StimulusValue]] = {
    StreamType.POSITION: POSITIONS,
    StreamType.LETTER: CONSONANTS,
    StreamType.COLOR: COLOR_PALETTE,
    StreamType.TONE: TONE_FREQUENCIES,
    StreamType.SHAPE: SHAPES,
}

MATCH_PROBABILITY = 0.3


class RandomSource(Protocol):
    """Anything shaped like ``random.Random``."""

    def random(self) -> float:
        ...

    def choice(self, seq: Sequence[StimulusValue]) -> StimulusValue:
        ...


def inject_matches(
    values: List[StimulusValue],
    n_level: int,
    rng: RandomSource,
    probability: float = MATCH_PROBABILITY,
) -> List[StimulusValue]:
    """Overwrite values in place so roughly ``probability`` of them repeat the value n back."""
    for i in range(n_level, len(values)):
        if rng.random() < probability:
            values[i] = values[i - n_level]
    return values


def generate_channel(
    channel: StreamType,
    block_size: int,
    n_level: int,
    rng: RandomSource,
    probability: float = MATCH_PROBABILITY,
) -> List[StimulusValue]:
    alphabet = ALPHABETS[StreamType(channel)]
    values = [rng.choice(alphabet) for _ in range(block_size)]
    return inject_matches(values, n_level, rng, probability)


def generate_sequence(
    block_size: int,
    n_level: int,
    channels: Sequence[StreamType],
    *,
    isi: float = 2.5,
    start_time_ms: int = 0,
    rng: Optional[RandomSource] = None,
    match_probability: float = MATCH_PROBABILITY,
) -> List[StimulusPacket]:
    """
    Build the full, fixed stimulus sequence for one block.

    Each channel is drawn and match-injected independently, so channels are
    not required to match on the same trials.

    Args:
        block_size: Number of trials in the block
        n_level: Lag used for match injection
        channels: Active channels; each gets a field on every packet
        isi: Inter-stimulus interval in seconds, used for scheduled timestamps
        start_time_ms: Epoch milliseconds of trial 0
        rng: Random source; a non-deterministic one is used when omitted
        match_probability: Chance that a trial past the lag window is forced to match

    Returns:
        Ordered list of ``block_size`` immutable packets
    """
    if block_size <= 0:
        raise ValueError(f"block_size must be > 0, got {block_size}")
    if n_level < 1:
        raise ValueError(f"n_level must be >= 1, got {n_level}")
    if not channels:
        raise ValueError("At least one channel is required")

    rng = rng or random.SystemRandom()

    streams = {
        StreamType(channel).value: generate_channel(channel, block_size, n_level, rng, match_probability)
        for channel in channels
    }

    packets = []
    for i in range(block_size):
        fields = {name: values[i] for name, values in streams.items()}
        packets.append(
            StimulusPacket(
                index=i,
                scheduled_timestamp=int(start_time_ms + i * isi * 1000),
                **fields,
            )
        )
    return packets


def match_rate(values: Sequence[StimulusValue], n_level: int) -> float:
    """Fraction of trials past the lag window that repeat the value n back."""
    scorable = len(values) - n_level
    if scorable <= 0:
        return 0.0
    matches = sum(1 for i in range(n_level, len(values)) if values[i] == values[i - n_level])
    return matches / scorable
