"""Send-then-observe validation of individual datastream values."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

from .channel import ChannelSession
from .core import DeviceTransport
from .fixtures import InterfaceFixture
from .values import TelemetryValue, equals

LOGGER = logging.getLogger(__name__)


class ValidationMismatchError(RuntimeError):
    """Raised when the observed event does not match what was sent."""

    def __init__(
        self,
        message: str,
        *,
        interface: str,
        path: str,
        expected: Any,
        actual: Any,
    ) -> None:
        super().__init__(f"{message}: expected {expected!r}, got {actual!r} ({interface}{path})")
        self.interface = interface
        self.path = path
        self.expected = expected
        self.actual = actual


class ValidationState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    AWAITING_EVENT = "awaiting_event"
    COMPARING = "comparing"
    DONE = "done"
    FAILED = "failed"


@dataclass(slots=True)
class RoundResult:
    path: str
    expected: TelemetryValue
    actual: Any = None
    passed: bool = False


@dataclass(slots=True)
class ScenarioReport:
    interface: str
    rounds: list[RoundResult] = field(default_factory=list)
    state: ValidationState = ValidationState.IDLE
    error: Optional[BaseException] = None

    @property
    def passed(self) -> bool:
        return self.state is ValidationState.DONE


class ValidationEngine:
    """Runs fixtures through the device and checks them on the channel.

    The engine borrows the channel and the device for the duration of one
    scenario and holds no transport state of its own.
    """

    def __init__(
        self,
        channel: ChannelSession,
        device: DeviceTransport,
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._channel = channel
        self._device = device
        self._clock = clock
        self._state = ValidationState.IDLE
        self.last_report: Optional[ScenarioReport] = None

    @property
    def state(self) -> ValidationState:
        return self._state

    async def validate(self, fixture: InterfaceFixture) -> ScenarioReport:
        """Send every fixture entry and compare it with the pushed event.

        The first failing round aborts the scenario and re-raises.
        """

        report = ScenarioReport(interface=fixture.interface)
        self.last_report = report

        for path, value in fixture.entries:
            result = RoundResult(path=path, expected=value)
            report.rounds.append(result)
            try:
                await self._run_round(report, fixture.interface, result)
            except Exception as exc:
                self._transition(report, ValidationState.FAILED)
                report.error = exc
                LOGGER.error("Validation of %s%s failed: %s", fixture.interface, path, exc)
                raise

            LOGGER.info("Validated %s%s", fixture.interface, path)

        self._transition(report, ValidationState.DONE)
        return report

    async def _run_round(
        self, report: ScenarioReport, interface: str, result: RoundResult
    ) -> None:
        self._transition(report, ValidationState.SENDING)
        await self._device.send_individual(interface, result.path, result.expected, self._clock())

        self._transition(report, ValidationState.AWAITING_EVENT)
        event = await self._channel.next_data_event()
        result.actual = event.value

        self._transition(report, ValidationState.COMPARING)
        if event.interface != interface:
            raise ValidationMismatchError(
                "interface mismatch",
                interface=interface,
                path=result.path,
                expected=interface,
                actual=event.interface,
            )
        if event.path != result.path:
            raise ValidationMismatchError(
                "path mismatch",
                interface=interface,
                path=result.path,
                expected=result.path,
                actual=event.path,
            )
        if not equals(result.expected, event.value):
            raise ValidationMismatchError(
                "value mismatch",
                interface=interface,
                path=result.path,
                expected=result.expected,
                actual=event.value,
            )

        result.passed = True

    def _transition(self, report: ScenarioReport, state: ValidationState) -> None:
        LOGGER.debug("Validation state %s -> %s", self._state.value, state.value)
        self._state = state
        report.state = state


async def validate_individual(
    channel: ChannelSession,
    device: DeviceTransport,
    fixture: InterfaceFixture,
) -> ScenarioReport:
    return await ValidationEngine(channel, device).validate(fixture)
