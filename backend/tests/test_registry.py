import asyncio

import pytest
from dual_nback.api.protocol import StartGameData
from dual_nback.config import Settings
from dual_nback.engine.registry import SessionRegistry
from dual_nback.errors import SessionNotFound, ValidationError
from dual_nback.models.game import Mode, SessionState, StreamType, Suggestion, UserResponse


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


class FakeClock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


def test_build_config_applies_defaults():
    registry = SessionRegistry(Settings(block_size=12, default_n_level=3))

    config = registry.build_config(Mode.QUAD)

    assert config.block_size == 12
    assert config.n_level == 3
    assert len(config.channels) == 4


@pytest.mark.parametrize("kwargs", [
    {"n_level": 0},
    {"n_level": 11},
    {"block_size": 0},
    {"isi": 0},
])
def test_build_config_rejects_invalid(kwargs):
    registry = SessionRegistry(Settings())

    with pytest.raises(ValidationError):
        registry.build_config(Mode.DUAL, **kwargs)


def test_zero_isi_only_in_test_mode():
    registry = SessionRegistry(Settings(test_mode=True))

    assert registry.build_config(Mode.DUAL, isi=0).isi == 0


def test_get_unknown_session():
    with pytest.raises(SessionNotFound):
        SessionRegistry().get("nope")


@pytest.mark.asyncio
async def test_start_command_emits_session_start_then_stimuli(recording_sender):
    registry = SessionRegistry(Settings(isi_seconds=0.05))
    sender = recording_sender()
    registry.on_connect("c1", sender)

    session = await registry.on_start_command("c1", StartGameData(mode=Mode.DUAL, n_level=2, block_size=3))
    await wait_until(lambda: session.delivered == 3)

    assert [e.type for e in sender.events] == ["session_start", "stimulus", "stimulus", "stimulus"]
    assert sender.events[0].data.session_id == session.session_id
    assert sender.events[0].data.total_trials == 3
    assert registry.stats()["active_games"] == 1
    await registry.shutdown()


@pytest.mark.asyncio
async def test_second_start_replaces_previous_session(recording_sender):
    registry = SessionRegistry(Settings(isi_seconds=0.05))
    registry.on_connect("c1", recording_sender())

    first = await registry.on_start_command("c1", StartGameData(block_size=5))
    second = await registry.on_start_command("c1", StartGameData(block_size=5))

    assert first.state == SessionState.ENDED
    assert first.end_reason == "replaced"
    assert second.is_active
    await registry.shutdown()


@pytest.mark.asyncio
async def test_commands_without_session_are_rejected(recording_sender):
    registry = SessionRegistry()
    registry.on_connect("c1", recording_sender())

    with pytest.raises(SessionNotFound):
        await registry.on_pause("c1")
    with pytest.raises(SessionNotFound):
        await registry.on_response("c1", UserResponse(channel=StreamType.POSITION, trial_index=0))
    with pytest.raises(SessionNotFound):
        await registry.on_end("unknown-connection")


@pytest.mark.asyncio
async def test_disconnect_ends_session_and_stops_delivery(recording_sender):
    registry = SessionRegistry(Settings(isi_seconds=0.05))
    sender = recording_sender()
    registry.on_connect("c1", sender)
    session = await registry.on_start_command("c1", StartGameData(block_size=20))
    await wait_until(lambda: session.delivered >= 1)

    await registry.on_disconnect("c1")
    sent = len(sender.events)
    await asyncio.sleep(0.15)

    assert session.state == SessionState.ENDED
    assert session.end_reason == "disconnected"
    assert len(sender.events) == sent
    assert registry.stats()["connected_clients"] == 0
    # the finished session stays inspectable until swept
    assert registry.get(session.session_id) is session


@pytest.mark.asyncio
async def test_end_command_reports_accuracy(recording_sender):
    registry = SessionRegistry(Settings(isi_seconds=0.05))
    sender = recording_sender()
    registry.on_connect("c1", sender)
    session = await registry.on_start_command("c1", StartGameData(block_size=10))

    await registry.on_end("c1")

    end = sender.of_type("session_end")[-1]
    assert end.data.reason == "ended"
    assert "combined" in end.data.accuracy
    assert session.state == SessionState.ENDED
    with pytest.raises(SessionNotFound):
        await registry.on_pause("c1")


@pytest.mark.asyncio
async def test_delivery_failure_drops_connection(recording_sender):
    registry = SessionRegistry(Settings(isi_seconds=0.01))
    sender = recording_sender()
    registry.on_connect("c1", sender)
    sender.fail = True

    # session_start goes out through the same sender, so start directly
    config = registry.build_config(Mode.DUAL, block_size=3)
    session = registry.create_session(config, sender=sender)
    registry._connections["c1"].session_id = session.session_id
    await session.start()
    await wait_until(lambda: "c1" not in registry._connections)

    assert session.end_reason == "delivery_failure"


@pytest.mark.asyncio
async def test_sweep_removes_only_old_terminal_sessions():
    clock = FakeClock()
    registry = SessionRegistry(Settings(retention_seconds=60), clock=clock)
    old = registry.create_session(registry.build_config(Mode.DUAL))
    recent = registry.create_session(registry.build_config(Mode.DUAL))
    running = registry.create_session(registry.build_config(Mode.DUAL))

    await old.start()
    await old.end()
    clock.now += 120
    await recent.start()
    await recent.end()
    await running.start()

    assert registry.sweep() == 1
    with pytest.raises(SessionNotFound):
        registry.get(old.session_id)
    assert registry.get(recent.session_id) is recent
    assert registry.get(running.session_id) is running


@pytest.mark.asyncio
async def test_sweeper_task_runs_and_shuts_down():
    registry = SessionRegistry(Settings(retention_seconds=0))
    session = registry.create_session(registry.build_config(Mode.DUAL))
    await session.start()
    await session.end()

    task = registry.start_sweeper(interval=0.01)
    await wait_until(lambda: registry.stats()["total_sessions"] == 0)
    await registry.shutdown()

    assert task.done()


@pytest.mark.asyncio
async def test_full_block_over_channel(recording_sender, scripted_rng):
    registry = SessionRegistry(Settings(test_mode=True), rng_factory=scripted_rng)
    sender = recording_sender()
    registry.on_connect("c1", sender)
    await registry.on_start_command("c1", StartGameData(mode=Mode.DUAL, n_level=2, block_size=20, isi=0))

    for i in range(20):
        result = await registry.on_response(
            "c1",
            UserResponse(channel=StreamType.POSITION, trial_index=i, is_match=i >= 2, reaction_time_ms=420),
        )

    assert result.completed
    assert len(sender.of_type("score_update")) == 20
    block_end = sender.of_type("block_end")[0]
    assert block_end.data.accuracy["combined"] == 1.0
    assert block_end.data.suggestion == Suggestion.PROMOTE
    assert block_end.data.new_level == 3
    types = [e.type for e in sender.events if e.type != "stimulus"]
    assert types[-2:] == ["block_end", "session_end"]
    assert sender.of_type("session_end")[0].data.reason == "completed"
    assert registry.stats()["active_games"] == 0


def claim(trial, channel=StreamType.POSITION, is_match=True):
    return UserResponse(channel=channel, trial_index=trial, is_match=is_match, reaction_time_ms=380)


@pytest.mark.asyncio
async def test_both_channels_claim_final_trial(recording_sender, scripted_rng):
    registry = SessionRegistry(Settings(isi_seconds=0.05), rng_factory=lambda: scripted_rng(forced_matches=100))
    sender = recording_sender()
    registry.on_connect("c1", sender)
    await registry.on_start_command("c1", StartGameData(mode=Mode.DUAL, n_level=1, block_size=3))

    await registry.on_response("c1", claim(0, is_match=False))
    await registry.on_response("c1", claim(1))
    await registry.on_response("c1", claim(1, StreamType.LETTER))
    await registry.on_response("c1", claim(2))
    result = await registry.on_response("c1", claim(2, StreamType.LETTER))

    assert result.completed
    assert len(sender.of_type("block_end")) == 1
    assert len(sender.of_type("session_end")) == 1
    block_end = sender.of_type("block_end")[0]
    assert block_end.data.accuracy == {"position": 1.0, "letter": 1.0, "combined": 1.0}
    assert block_end.data.suggestion == Suggestion.PROMOTE
    assert sender.of_type("score_update")[-1].data.trial == 3
    assert registry.stats()["active_games"] == 0


@pytest.mark.asyncio
async def test_final_trial_window_emits_completion(recording_sender, scripted_rng):
    registry = SessionRegistry(Settings(isi_seconds=0.05), rng_factory=lambda: scripted_rng(forced_matches=100))
    sender = recording_sender()
    registry.on_connect("c1", sender)
    session = await registry.on_start_command("c1", StartGameData(mode=Mode.DUAL, n_level=1, block_size=3))

    await registry.on_response("c1", claim(0, is_match=False))
    await registry.on_response("c1", claim(1))
    await registry.on_response("c1", claim(1, StreamType.LETTER))
    result = await registry.on_response("c1", claim(2))
    assert not result.completed

    await wait_until(lambda: len(sender.of_type("session_end")) == 1)

    assert session.state == SessionState.COMPLETED
    block_end = sender.of_type("block_end")[0]
    assert block_end.data.accuracy == {"position": 1.0, "letter": 0.5, "combined": 0.75}
    assert sender.of_type("session_end")[0].data.reason == "completed"
    assert registry.stats()["active_games"] == 0
    with pytest.raises(SessionNotFound):
        await registry.on_response("c1", claim(2, StreamType.LETTER))


@pytest.mark.asyncio
async def test_score_update_after_skipped_trials(recording_sender, scripted_rng):
    registry = SessionRegistry(Settings(isi_seconds=0.05), rng_factory=lambda: scripted_rng(forced_matches=7))
    sender = recording_sender()
    registry.on_connect("c1", sender)
    await registry.on_start_command("c1", StartGameData(mode=Mode.DUAL, n_level=1, block_size=8))

    await registry.on_response("c1", claim(0, is_match=False))
    await registry.on_response("c1", claim(5))

    update = sender.of_type("score_update")[-1]
    assert update.data.trial == 2
    assert update.data.accuracy == {"position": 0.2, "letter": 1.0, "combined": 0.6}
    await registry.shutdown()


@pytest.mark.asyncio
async def test_start_command_uses_configured_defaults(recording_sender):
    registry = SessionRegistry(Settings(default_mode="quad", default_n_level=4, isi_seconds=0.05))
    registry.on_connect("c1", recording_sender())

    session = await registry.on_start_command("c1", StartGameData())

    assert session.config.mode == Mode.QUAD
    assert session.config.n_level == 4
    assert len(session.channels) == 4
    await registry.shutdown()


@pytest.mark.asyncio
async def test_disconnect_after_delivery_failure_does_not_raise():
    release = asyncio.Event()
    attempted = asyncio.Event()

    async def dying_sender(event):
        if event.type == "stimulus":
            attempted.set()
            await release.wait()
            raise ConnectionError("socket closed")

    registry = SessionRegistry(Settings(isi_seconds=0.05))
    registry.on_connect("c1", dying_sender)
    session = await registry.on_start_command("c1", StartGameData(block_size=5))
    await attempted.wait()

    async with session._lock:
        # the failed send and the disconnect both queue behind the lock
        release.set()
        await asyncio.sleep(0.01)
        disconnecting = asyncio.create_task(registry.on_disconnect("c1"))
        await asyncio.sleep(0.01)
    await disconnecting

    assert session.state == SessionState.ENDED
    assert session.end_reason == "delivery_failure"
    assert registry.stats()["connected_clients"] == 0


@pytest.mark.asyncio
async def test_shutdown_skips_sessions_already_ended(recording_sender):
    registry = SessionRegistry(Settings(isi_seconds=0.05))
    registry.on_connect("c1", recording_sender())
    session = await registry.on_start_command("c1", StartGameData(block_size=5))
    await registry.on_end("c1")

    await registry.shutdown()

    assert session.end_reason == "ended"
