import pytest


class ScriptedRandom:
    """
    Deterministic stand-in for random.Random.

    choice() walks each alphabet in order using one counter shared across
    calls; random() forces a match for the first ``forced_matches`` draws
    and never afterwards.
    """

    def __init__(self, forced_matches: int = 18):
        self._choices = 0
        self._draws = 0
        self._forced = forced_matches

    def choice(self, seq):
        value = seq[self._choices % len(seq)]
        self._choices += 1
        return value

    def random(self):
        self._draws += 1
        return 0.0 if self._draws <= self._forced else 0.99


class RecordingSender:
    """Async sender that keeps every outbound event; can be told to fail."""

    def __init__(self, fail: bool = False):
        self.events = []
        self.fail = fail

    async def __call__(self, event):
        if self.fail:
            raise ConnectionError("socket closed")
        self.events.append(event)

    def of_type(self, event_type):
        return [e for e in self.events if e.type == event_type]

    def stimulus_indices(self):
        return [e.data.packet.index for e in self.of_type("stimulus")]


@pytest.fixture
def scripted_rng():
    return ScriptedRandom


@pytest.fixture
def recording_sender():
    return RecordingSender
