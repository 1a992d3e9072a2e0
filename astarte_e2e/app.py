"""Main application entry-point for astarte-e2e."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Optional

import aiohttp

from .adapters import MQTTConnectionError
from .api import ApiClient, ApiError
from .channel import (
    ChannelConnectionError,
    ChannelProtocolError,
    ChannelSession,
    ChannelTimeoutError,
    register_triggers,
)
from .config import E2EConfig, load_config, validate_config
from .convergence import ConvergenceExhaustedError, check_add, check_remove
from .device import AstarteDevice, DeviceTransportError
from .fixtures import Variant
from .logging import configure_logging
from .validation import ValidationMismatchError, validate_individual
from .values import ValueDecodeError

LOGGER = logging.getLogger(__name__)

# A failed check is logged and the schedule goes on with the same sessions.
CHECK_FAILURES = (
    ValidationMismatchError,
    ValueDecodeError,
    ChannelTimeoutError,
    ChannelProtocolError,
    ConvergenceExhaustedError,
    DeviceTransportError,
    ApiError,
)

# Broken transports are torn down and rebuilt on the next tick.
CONNECTION_FAILURES = (
    ChannelConnectionError,
    MQTTConnectionError,
    aiohttp.ClientError,
    OSError,
)


class Check(str, Enum):
    INDIVIDUAL_DATASTREAM = "individual-datastream"
    INTERFACES = "interfaces"


ChannelFactory = Callable[[], Awaitable[ChannelSession]]
DeviceFactory = Callable[[], AstarteDevice]
ApiFactory = Callable[[], ApiClient]


class E2EApp:
    """Runs one end-to-end check on a fixed schedule.

    Sessions are created lazily before the first check and reused across
    ticks until a connection error forces them to be rebuilt.
    """

    def __init__(
        self,
        config: Optional[E2EConfig] = None,
        *,
        check: Check = Check.INDIVIDUAL_DATASTREAM,
        variant: Optional[Variant] = None,
        interval: Optional[float] = None,
        channel_factory: Optional[ChannelFactory] = None,
        device_factory: Optional[DeviceFactory] = None,
        api_factory: Optional[ApiFactory] = None,
    ) -> None:
        self._config = config or load_config()
        self.check = check
        self.variant = variant or self._config.check.variant
        self.interval = (
            self._config.check.interval_seconds if interval is None else interval
        )

        self._channel_factory = channel_factory or self._connect_channel
        self._device_factory = device_factory or self._build_device
        self._api_factory = api_factory or self._build_api

        self._channel: Optional[ChannelSession] = None
        self._device: Optional[AstarteDevice] = None
        self._api: Optional[ApiClient] = None
        self._shutdown_event: Optional[asyncio.Event] = None
        self.passed = 0
        self.failed = 0

    async def run(self, *, once: bool = False) -> bool:
        """Run checks until stopped; with ``once`` run a single check.

        Returns whether the last check passed.
        """

        self._shutdown_event = asyncio.Event()
        LOGGER.info(
            "astarte-e2e starting %s check (variant=%s, interval=%ss)",
            self.check.value,
            self.variant.value,
            self.interval,
        )

        try:
            while True:
                passed = await self.run_check()
                if once:
                    return passed

                try:
                    await asyncio.wait_for(self._shutdown_event.wait(), timeout=self.interval)
                except asyncio.TimeoutError:
                    continue
                return passed
        finally:
            await self._teardown()

    def stop(self) -> None:
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    async def run_check(self) -> bool:
        try:
            if self.check is Check.INDIVIDUAL_DATASTREAM:
                await self._check_individual_datastream()
            else:
                await self._check_interfaces()
        except CHECK_FAILURES as exc:
            self.failed += 1
            LOGGER.error("%s check failed: %s", self.check.value, exc)
            if self.check is Check.INDIVIDUAL_DATASTREAM:
                # Late events from the failed round must not leak into the next one.
                await self._close_channel()
            return False
        except CONNECTION_FAILURES as exc:
            self.failed += 1
            LOGGER.error("%s check lost its connection: %s", self.check.value, exc)
            await self._teardown()
            return False

        self.passed += 1
        LOGGER.info(
            "%s check passed (%d passed, %d failed)",
            self.check.value,
            self.passed,
            self.failed,
        )
        return True

    async def _check_individual_datastream(self) -> None:
        device = await self._ensure_device()
        channel = await self._ensure_channel()
        await validate_individual(channel, device, self.variant.fixture)

    async def _check_interfaces(self) -> None:
        device = await self._ensure_device()
        api = await self._ensure_api()
        attempts = self._config.check.convergence_attempts
        await check_add(api, device, attempts=attempts)
        await check_remove(api, device, attempts=attempts)

    # ------------------------------------------------------------------
    # Session management
    # ------------------------------------------------------------------
    async def _ensure_channel(self) -> ChannelSession:
        if self._channel is None:
            channel = await self._channel_factory()
            try:
                await register_triggers(channel)
            except BaseException:
                await channel.close()
                raise
            self._channel = channel
        return self._channel

    async def _ensure_device(self) -> AstarteDevice:
        if self._device is None:
            device = self._device_factory()
            await device.connect()
            self._device = device
        return self._device

    async def _ensure_api(self) -> ApiClient:
        if self._api is None:
            api = self._api_factory()
            try:
                await api.is_healthy()
            except BaseException:
                await api.aclose()
                raise
            self._api = api
        return self._api

    async def _connect_channel(self) -> ChannelSession:
        astarte = self._config.astarte
        channel = self._config.channel
        return await ChannelSession.connect(
            astarte.appengine_websocket(),
            astarte.realm,
            astarte.jwt,
            astarte.device_id,
            ssl=not astarte.ignore_ssl_errors,
            reply_timeout=channel.reply_timeout_seconds,
            queue_size=channel.queue_size,
            heartbeat_interval=channel.heartbeat_interval_seconds,
        )

    def _build_device(self) -> AstarteDevice:
        astarte = self._config.astarte
        return AstarteDevice(self._config.device, astarte.realm, astarte.device_id)

    def _build_api(self) -> ApiClient:
        astarte = self._config.astarte
        return ApiClient(
            astarte.appengine_url,
            astarte.pairing_url,
            astarte.realm,
            astarte.device_id,
            astarte.jwt,
            ssl=not astarte.ignore_ssl_errors,
        )

    async def _close_channel(self) -> None:
        channel, self._channel = self._channel, None
        if channel is not None:
            await channel.close()

    async def _teardown(self) -> None:
        await self._close_channel()

        device, self._device = self._device, None
        if device is not None:
            try:
                await device.disconnect()
            except (asyncio.TimeoutError, MQTTConnectionError) as exc:
                LOGGER.warning("Device disconnect did not complete: %s", exc)

        api, self._api = self._api, None
        if api is not None:
            await api.aclose()

    @classmethod
    def start(
        cls,
        config: Optional[E2EConfig] = None,
        *,
        check: Check = Check.INDIVIDUAL_DATASTREAM,
        variant: Optional[Variant] = None,
        interval: Optional[float] = None,
        once: bool = False,
    ) -> bool:
        instance = cls(config=config, check=check, variant=variant, interval=interval)
        configure_logging(
            instance._config.logging.level,
            log_path=instance._config.logging.path,
            log_network=instance._config.logging.log_network,
        )
        validate_config(instance._config)
        try:
            return asyncio.run(instance.run(once=once))
        except KeyboardInterrupt:
            LOGGER.info("astarte-e2e received shutdown signal")
            return instance.failed == 0
