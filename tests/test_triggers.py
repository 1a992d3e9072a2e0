"""Tests for trigger declarations and registration."""

import pytest

from astarte_e2e.channel import (
    ChannelProtocolError,
    DataTrigger,
    DataTriggerCondition,
    DeviceTrigger,
    DeviceTriggerCondition,
    TransitiveTrigger,
    default_triggers,
    register_triggers,
)


class _RecordingChannel:
    def __init__(self, *, joined: bool = False, fail_on: str | None = None) -> None:
        self.device_id = "dev"
        self.joined = joined
        self.join_calls = 0
        self.watched: list[str] = []
        self._fail_on = fail_on

    async def join(self):
        self.join_calls += 1
        self.joined = True
        return {}

    async def watch(self, trigger):
        if trigger.name == self._fail_on:
            raise ChannelProtocolError(f"watch rejected: {trigger.name}")
        self.watched.append(trigger.name)
        return {}


def test_device_trigger_payload():
    trigger = TransitiveTrigger(
        name="connectiontrigger-dev",
        device_id="dev",
        simple_trigger=DeviceTrigger(DeviceTriggerCondition.DEVICE_CONNECTED, "dev"),
    )

    assert trigger.to_payload() == {
        "name": "connectiontrigger-dev",
        "device_id": "dev",
        "simple_trigger": {
            "type": "device_trigger",
            "on": "device_connected",
            "device_id": "dev",
        },
    }


def test_data_trigger_defaults_match_everything():
    payload = DataTrigger(DataTriggerCondition.INCOMING_DATA, "dev").to_payload()

    assert payload["interface_name"] == "*"
    assert payload["match_path"] == "/*"
    assert payload["value_match_operator"] == "*"


def test_default_triggers_cover_connection_error_and_data():
    triggers = default_triggers("dev")

    assert [trigger.simple_trigger.on.value for trigger in triggers] == [
        "device_connected",
        "device_disconnected",
        "device_error",
        "incoming_data",
    ]


@pytest.mark.asyncio
async def test_register_triggers_joins_when_needed():
    channel = _RecordingChannel()

    await register_triggers(channel)

    assert channel.join_calls == 1
    assert len(channel.watched) == 4


@pytest.mark.asyncio
async def test_register_triggers_reuses_joined_room():
    channel = _RecordingChannel(joined=True)

    await register_triggers(channel)

    assert channel.join_calls == 0


@pytest.mark.asyncio
async def test_first_failing_watch_aborts_registration():
    channel = _RecordingChannel(fail_on="errortrigger-dev")

    with pytest.raises(ChannelProtocolError):
        await register_triggers(channel)

    assert channel.watched == ["connectiontrigger-dev", "disconnectiontrigger-dev"]
