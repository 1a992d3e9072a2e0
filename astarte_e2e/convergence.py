"""Polling for eventually consistent interface state."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Iterable, Optional, TypeVar

from . import constants
from .core import DeviceTransport, InterfaceLister, additional_interfaces, interface_names
from .core.interfaces import DEVICE_AGGREGATE, DEVICE_DATASTREAM, SERVER_AGGREGATE

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

BASE_INTERFACES = frozenset({DEVICE_AGGREGATE, DEVICE_DATASTREAM, SERVER_AGGREGATE})


class ConvergenceExhaustedError(RuntimeError):
    """Raised when a poll never succeeded within its attempt budget."""

    def __init__(self, attempts: int, last_error: Optional[BaseException]) -> None:
        super().__init__(f"too many attempts ({attempts}), last error: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class MissingInterfacesError(RuntimeError):
    """Raised by the interface poll while expected interfaces are not listed."""

    def __init__(self, missing: Iterable[str]) -> None:
        self.missing = sorted(missing)
        super().__init__(f"missing interfaces: {', '.join(self.missing)}")


async def retry(
    attempts: int,
    poll: Callable[[], Awaitable[T]],
    *,
    interval: float = constants.DEFAULT_RETRY_INTERVAL_SECONDS,
) -> T:
    """Call ``poll`` until it succeeds, at most ``attempts`` times.

    Attempts are separated by a fixed ``interval``.

    Raises:
        ConvergenceExhaustedError: After the last failed attempt, chained from
            the last poll error.
    """

    if attempts < 1:
        raise ValueError("attempts must be at least 1")

    last_error: Optional[Exception] = None
    for attempt in range(1, attempts + 1):
        try:
            return await poll()
        except Exception as exc:
            last_error = exc
            LOGGER.warning("Failed retry %d/%d: %s", attempt, attempts, exc)

        if attempt < attempts:
            await asyncio.sleep(interval)

    raise ConvergenceExhaustedError(attempts, last_error) from last_error


def expect_interfaces(
    api: InterfaceLister, expected: Iterable[str]
) -> Callable[[], Awaitable[set[str]]]:
    """Build a poll that succeeds once ``expected`` is a subset of the listed interfaces."""

    wanted = frozenset(expected)

    async def poll() -> set[str]:
        listed = set(await api.interfaces())
        LOGGER.debug("Listed interfaces: %s", sorted(listed))
        missing = wanted - listed
        if missing:
            raise MissingInterfacesError(missing)
        return listed

    return poll


async def check_add(
    api: InterfaceLister,
    device: DeviceTransport,
    *,
    attempts: int = constants.DEFAULT_CONVERGENCE_ATTEMPTS,
    interval: float = constants.DEFAULT_RETRY_INTERVAL_SECONDS,
) -> None:
    """Wait for the base interfaces, add the additional ones and wait for them too."""

    await retry(attempts, expect_interfaces(api, BASE_INTERFACES), interval=interval)

    extra = additional_interfaces()
    LOGGER.debug("Adding %d interfaces", len(extra))
    await device.extend_interfaces(extra)

    expected = BASE_INTERFACES | interface_names(extra)
    await retry(attempts, expect_interfaces(api, expected), interval=interval)


async def check_remove(
    api: InterfaceLister,
    device: DeviceTransport,
    *,
    attempts: int = constants.DEFAULT_CONVERGENCE_ATTEMPTS,
    interval: float = constants.DEFAULT_RETRY_INTERVAL_SECONDS,
) -> None:
    """Remove the additional interfaces and check the base set is still listed."""

    await device.remove_interfaces(interface_names(additional_interfaces()))
    await retry(attempts, expect_interfaces(api, BASE_INTERFACES), interval=interval)
