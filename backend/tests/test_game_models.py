import pytest
from pydantic import ValidationError
from dual_nback.models.game import (
    GameConfig,
    Mode,
    SessionState,
    StimulusPacket,
    StreamType,
    UserResponse,
)
from dual_nback.models.history import SessionRecord


def test_game_config_channels_follow_mode():
    assert GameConfig(mode=Mode.DUAL).channels == [StreamType.POSITION, StreamType.LETTER]
    assert len(GameConfig(mode=Mode.QUAD).channels) == 4
    assert GameConfig(mode="penta").channels[-1] == StreamType.SHAPE


def test_game_config_accepts_camel_case():
    config = GameConfig.model_validate({"mode": "dual", "nLevel": 3, "blockSize": 10})

    assert config.n_level == 3
    assert config.block_size == 10
    assert config.model_dump(by_alias=True)["nLevel"] == 3


@pytest.mark.parametrize("field,value", [
    ("n_level", 0),
    ("n_level", 11),
    ("block_size", 0),
    ("isi", -1),
])
def test_game_config_rejects_out_of_range(field, value):
    with pytest.raises(ValidationError):
        GameConfig(**{field: value})


def test_stimulus_packet_is_immutable():
    packet = StimulusPacket(index=0, position=4, letter="K")

    assert packet.value(StreamType.POSITION) == 4
    assert packet.value(StreamType.COLOR) is None
    with pytest.raises(ValidationError):
        packet.position = 5


def test_user_response_defaults_and_bounds():
    response = UserResponse.model_validate({"channel": "letter", "trialIndex": 3})

    assert response.is_match is False
    assert response.timestamp > 0
    with pytest.raises(ValidationError):
        UserResponse(channel=StreamType.LETTER, trial_index=-1)
    with pytest.raises(ValidationError):
        UserResponse.model_validate({"channel": "smell", "trialIndex": 0})


def test_session_state_terminal_flags():
    assert SessionState.COMPLETED.is_terminal
    assert SessionState.ENDED.is_terminal
    assert not SessionState.PAUSED.is_terminal


def test_session_record_requires_id():
    with pytest.raises(ValidationError):
        SessionRecord(
            session_id="",
            started_at="2026-01-24T10:00:00Z",
            mode="dual",
            n_level=2,
            block_size=20,
            isi=2.5,
        )
