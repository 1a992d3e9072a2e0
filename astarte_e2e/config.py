"""Configuration loader for astarte-e2e."""

from __future__ import annotations

import os
from configparser import ConfigParser
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional
from urllib.parse import urljoin, urlsplit, urlunsplit

from . import constants
from .fixtures import Variant


class ConfigurationError(ValueError):
    """Raised when the resolved configuration is unusable."""


# Environment variables take precedence over the configuration file.
ENV_OVERRIDES: dict[tuple[str, str], str] = {
    ("astarte", "appengine_url"): "E2E_APPENGINE_URL",
    ("astarte", "pairing_url"): "E2E_PAIRING_URL",
    ("astarte", "realm"): "E2E_REALM",
    ("astarte", "device_id"): "E2E_DEVICE_ID",
    ("astarte", "jwt"): "E2E_JWT",
    ("astarte", "ignore_ssl_errors"): "E2E_IGNORE_SSL_ERRORS",
    ("device", "broker_url"): "E2E_BROKER_URL",
    ("device", "client_cert"): "E2E_CLIENT_CERT",
    ("device", "client_key"): "E2E_CLIENT_KEY",
    ("device", "ca_cert"): "E2E_CA_CERT",
    ("check", "interval_seconds"): "E2E_CHECK_INTERVAL_SECONDS",
    ("check", "variant"): "E2E_INDIVIDUAL_DATASTREAM_VARIANT",
    ("logging", "level"): "E2E_LOG_LEVEL",
}


@dataclass(slots=True)
class AstarteConfig:
    appengine_url: str = constants.DEFAULT_APPENGINE_URL
    pairing_url: str = constants.DEFAULT_PAIRING_URL
    realm: str = constants.DEFAULT_REALM
    device_id: str = ""
    jwt: str = ""
    ignore_ssl_errors: bool = False

    def appengine_websocket(self) -> str:
        """AppEngine socket endpoint: http becomes ws, https becomes wss."""

        parts = urlsplit(self.appengine_url)
        scheme = {"http": "ws", "https": "wss"}.get(parts.scheme)
        if scheme is None:
            raise ConfigurationError(
                f"invalid appengine scheme {parts.scheme!r} for url {self.appengine_url}"
            )

        base = urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))
        if not base.endswith("/"):
            base += "/"
        joined = urlsplit(urljoin(base, "v1/socket/websocket"))
        return urlunsplit((scheme, joined.netloc, joined.path, "", ""))


@dataclass(slots=True)
class DeviceConfig:
    broker_url: str = ""
    client_cert: Optional[Path] = None
    client_key: Optional[Path] = None
    ca_cert: Optional[Path] = None
    ignore_ssl_errors: bool = False
    keepalive: int = 60

    @property
    def broker_host(self) -> str:
        return urlsplit(self.broker_url).hostname or ""

    @property
    def broker_port(self) -> int:
        return urlsplit(self.broker_url).port or constants.DEFAULT_BROKER_PORT

    @property
    def use_tls(self) -> bool:
        return urlsplit(self.broker_url).scheme in ("mqtts", "ssl", "tls")


@dataclass(slots=True)
class ChannelConfig:
    reply_timeout_seconds: float = constants.DEFAULT_REPLY_TIMEOUT_SECONDS
    queue_size: int = constants.DEFAULT_QUEUE_SIZE
    heartbeat_interval_seconds: float = constants.DEFAULT_HEARTBEAT_INTERVAL_SECONDS


@dataclass(slots=True)
class CheckConfig:
    interval_seconds: float = constants.DEFAULT_CHECK_INTERVAL_SECONDS
    variant: Variant = Variant.DEFAULT
    convergence_attempts: int = constants.DEFAULT_CONVERGENCE_ATTEMPTS


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    path: Optional[Path] = None
    log_network: bool = False


@dataclass(slots=True)
class E2EConfig:
    astarte: AstarteConfig
    device: DeviceConfig
    channel: ChannelConfig
    check: CheckConfig
    logging: LoggingConfig
    raw: ConfigParser
    path: Path


def _optional_path(value: Optional[str]) -> Optional[Path]:
    if not value:
        return None
    return Path(value).expanduser()


def _apply_env(parser: ConfigParser, environ: Mapping[str, str]) -> None:
    for (section, option), variable in ENV_OVERRIDES.items():
        value = environ.get(variable)
        if value is not None and value != "":
            parser.set(section, option, value)


def load_config(
    path: Optional[Path] = None, *, environ: Optional[Mapping[str, str]] = None
) -> E2EConfig:
    """Load configuration from disk and the environment, applying defaults."""

    config_path = path or constants.DEFAULT_CONFIG_PATH
    parser = ConfigParser()
    parser.read_dict(
        {
            "astarte": {
                "appengine_url": constants.DEFAULT_APPENGINE_URL,
                "pairing_url": constants.DEFAULT_PAIRING_URL,
                "realm": constants.DEFAULT_REALM,
                "device_id": "",
                "jwt": "",
                "ignore_ssl_errors": "false",
            },
            "device": {
                "broker_url": "",
                "client_cert": "",
                "client_key": "",
                "ca_cert": "",
                "keepalive": "60",
            },
            "channel": {
                "reply_timeout_seconds": str(constants.DEFAULT_REPLY_TIMEOUT_SECONDS),
                "queue_size": str(constants.DEFAULT_QUEUE_SIZE),
                "heartbeat_interval_seconds": str(
                    constants.DEFAULT_HEARTBEAT_INTERVAL_SECONDS
                ),
            },
            "check": {
                "interval_seconds": str(constants.DEFAULT_CHECK_INTERVAL_SECONDS),
                "variant": Variant.DEFAULT.value,
                "convergence_attempts": str(constants.DEFAULT_CONVERGENCE_ATTEMPTS),
            },
            "logging": {
                "level": "INFO",
                "path": "",
                "log_network": "false",
            },
        }
    )

    if config_path.exists():
        parser.read(config_path)

    _apply_env(parser, os.environ if environ is None else environ)

    ignore_ssl = parser.getboolean("astarte", "ignore_ssl_errors", fallback=False)

    astarte = AstarteConfig(
        appengine_url=parser.get("astarte", "appengine_url"),
        pairing_url=parser.get("astarte", "pairing_url"),
        realm=parser.get("astarte", "realm"),
        device_id=parser.get("astarte", "device_id"),
        jwt=parser.get("astarte", "jwt"),
        ignore_ssl_errors=ignore_ssl,
    )

    device = DeviceConfig(
        broker_url=parser.get("device", "broker_url"),
        client_cert=_optional_path(parser.get("device", "client_cert", fallback="")),
        client_key=_optional_path(parser.get("device", "client_key", fallback="")),
        ca_cert=_optional_path(parser.get("device", "ca_cert", fallback="")),
        ignore_ssl_errors=ignore_ssl,
        keepalive=max(1, parser.getint("device", "keepalive", fallback=60)),
    )

    channel = ChannelConfig(
        reply_timeout_seconds=max(
            0.1,
            parser.getfloat(
                "channel",
                "reply_timeout_seconds",
                fallback=constants.DEFAULT_REPLY_TIMEOUT_SECONDS,
            ),
        ),
        queue_size=max(
            1, parser.getint("channel", "queue_size", fallback=constants.DEFAULT_QUEUE_SIZE)
        ),
        heartbeat_interval_seconds=parser.getfloat(
            "channel",
            "heartbeat_interval_seconds",
            fallback=constants.DEFAULT_HEARTBEAT_INTERVAL_SECONDS,
        ),
    )

    variant_value = parser.get("check", "variant", fallback=Variant.DEFAULT.value)
    try:
        variant = Variant(variant_value.strip().lower())
    except ValueError as exc:
        choices = ", ".join(v.value for v in Variant)
        raise ConfigurationError(
            f"unknown variant {variant_value!r} (expected one of: {choices})"
        ) from exc

    check = CheckConfig(
        interval_seconds=max(
            0.0,
            parser.getfloat(
                "check", "interval_seconds", fallback=constants.DEFAULT_CHECK_INTERVAL_SECONDS
            ),
        ),
        variant=variant,
        convergence_attempts=max(
            1,
            parser.getint(
                "check",
                "convergence_attempts",
                fallback=constants.DEFAULT_CONVERGENCE_ATTEMPTS,
            ),
        ),
    )

    logging_config = LoggingConfig(
        level=parser.get("logging", "level", fallback="INFO"),
        path=_optional_path(parser.get("logging", "path", fallback="")),
        log_network=parser.getboolean("logging", "log_network", fallback=False),
    )

    return E2EConfig(
        astarte=astarte,
        device=device,
        channel=channel,
        check=check,
        logging=logging_config,
        raw=parser,
        path=config_path,
    )


def validate_config(config: E2EConfig) -> None:
    """Check the settings a validation run cannot do without."""

    missing = [
        name
        for name, value in (
            ("astarte.device_id", config.astarte.device_id),
            ("astarte.jwt", config.astarte.jwt),
            ("device.broker_url", config.device.broker_url),
        )
        if not value
    ]
    if missing:
        raise ConfigurationError(f"missing required settings: {', '.join(missing)}")

    config.astarte.appengine_websocket()
