"""Tests for retry and interface convergence checks."""

import pytest

from conftest import EchoDevice, FakeChannel

from astarte_e2e.convergence import (
    BASE_INTERFACES,
    ConvergenceExhaustedError,
    MissingInterfacesError,
    check_add,
    check_remove,
    retry,
)
from astarte_e2e.core import additional_interfaces, interface_names


class _Poll:
    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError(f"failure {self.calls}")
        return "ok"


class _FakeApi:
    """Lists interfaces from a script, one entry per call; the last repeats."""

    def __init__(self, *listings) -> None:
        self._listings = [list(listing) for listing in listings]
        self.calls = 0

    async def interfaces(self) -> list[str]:
        index = min(self.calls, len(self._listings) - 1)
        self.calls += 1
        return self._listings[index]


ADDITIONAL = interface_names(additional_interfaces())


@pytest.mark.asyncio
async def test_retry_returns_after_transient_failures():
    poll = _Poll(failures=2)

    result = await retry(5, poll, interval=0)

    assert result == "ok"
    assert poll.calls == 3


@pytest.mark.asyncio
async def test_retry_exhaustion_wraps_last_error():
    poll = _Poll(failures=10)

    with pytest.raises(ConvergenceExhaustedError) as excinfo:
        await retry(3, poll, interval=0)

    assert poll.calls == 3
    assert excinfo.value.attempts == 3
    assert str(excinfo.value.last_error) == "failure 3"
    assert excinfo.value.__cause__ is excinfo.value.last_error


@pytest.mark.asyncio
async def test_retry_rejects_non_positive_attempts():
    with pytest.raises(ValueError):
        await retry(0, _Poll(failures=0), interval=0)


def test_additional_interfaces_are_the_property_and_server_datastream_set():
    assert ADDITIONAL == {
        "org.astarte-platform.e2e.DeviceProperty",
        "org.astarte-platform.e2e.ServerProperty",
        "org.astarte-platform.e2e.ServerDatastream",
    }


@pytest.mark.asyncio
async def test_check_add_waits_for_base_then_additional_interfaces():
    api = _FakeApi(
        [],
        BASE_INTERFACES,
        BASE_INTERFACES,
        BASE_INTERFACES | ADDITIONAL,
    )
    device = EchoDevice(FakeChannel())

    await check_add(api, device, attempts=5, interval=0)

    assert api.calls == 4
    assert device.extended == [sorted(ADDITIONAL)]


@pytest.mark.asyncio
async def test_check_add_fails_when_interfaces_never_appear():
    api = _FakeApi(BASE_INTERFACES)
    device = EchoDevice(FakeChannel())

    with pytest.raises(ConvergenceExhaustedError) as excinfo:
        await check_add(api, device, attempts=2, interval=0)

    assert isinstance(excinfo.value.last_error, MissingInterfacesError)
    assert set(excinfo.value.last_error.missing) == ADDITIONAL


@pytest.mark.asyncio
async def test_check_remove_drops_additional_and_keeps_base():
    api = _FakeApi(BASE_INTERFACES)
    device = EchoDevice(FakeChannel())

    await check_remove(api, device, attempts=2, interval=0)

    assert device.removed == [sorted(ADDITIONAL)]
    assert api.calls == 1
