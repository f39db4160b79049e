"""Registration configuration snapshot, TOML loading and instance identifier storage."""

from __future__ import annotations

import logging
import os
import uuid
from dataclasses import field as dataclass_field
from pathlib import Path
from typing import Any, Mapping
from urllib.parse import urlsplit

import toml
from typing_extensions import Self

from .constants import (
    DEFAULT_KEEPALIVE_INTERVAL,
    DEFAULT_REGISTER_EXPIRES,
    DEFAULT_REGISTER_TIMEOUT,
    DEFAULT_WS_PORT,
    DEFAULT_WSS_PORT,
    WEBSOCKET_SUBPROTOCOL,
)
from .exceptions import ConfigError
from .helpers import slots_dataclass


__all__ = [
    "RegistrationConfig",
    "InstanceIdStore",
    "load_config",
]


_logger = logging.getLogger(__name__)


DEFAULT_PORTS: Mapping[str, int] = {"wss": DEFAULT_WSS_PORT, "ws": DEFAULT_WS_PORT}

CONFIG_SECTION: str = "registration"
INSTANCE_ID_KEY: str = "instance_id"


@slots_dataclass(frozen=True)
class RegistrationConfig:
    """
    Immutable configuration for a single registration attempt.

    :param ws_url: The ``wss://`` (or ``ws://``) URL of the SIP WebSocket gateway.
    :param domain: The SIP domain to register to.
    :param agent_id: The user part of the address-of-record.
    :param user_agent: The ``User-Agent`` used both for the upgrade request and SIP.
    :param instance_id: The device instance UUID, stable across sessions.
    :param origin: The ``Origin`` header for the upgrade request, if any.
    :param expires: The requested registration lease, in seconds.
    :param subprotocol: The WebSocket subprotocol to request.
    :param register_timeout: Seconds to wait for a SIP response before giving up.
    :param keepalive_interval: Seconds between WebSocket keepalive pings.
    :param reg_id: The outbound ``reg-id`` Contact parameter.
    :param sip_ice: Whether to advertise ICE support (``+sip.ice``) in Contact.
    """

    ws_url: str
    domain: str
    agent_id: str
    user_agent: str
    instance_id: uuid.UUID = dataclass_field(default_factory=uuid.uuid4)
    origin: str | None = None
    expires: int = DEFAULT_REGISTER_EXPIRES
    subprotocol: str | None = WEBSOCKET_SUBPROTOCOL
    register_timeout: float = DEFAULT_REGISTER_TIMEOUT
    keepalive_interval: float = DEFAULT_KEEPALIVE_INTERVAL
    reg_id: int = 1
    sip_ice: bool = True

    def __post_init__(self) -> None:
        url = urlsplit(self.ws_url)
        if url.scheme not in DEFAULT_PORTS:
            raise ConfigError(f"Unsupported WebSocket URL scheme: {self.ws_url}")
        if not url.hostname:
            raise ConfigError(f"Missing host in WebSocket URL: {self.ws_url}")
        try:
            url.port  # noqa: B018
        except ValueError as exc:
            raise ConfigError(f"Invalid port in WebSocket URL: {self.ws_url}") from exc
        for name in ("domain", "agent_id"):
            if not getattr(self, name):
                raise ConfigError(f"Missing required configuration value: {name}")
        if self.expires < 0:
            raise ConfigError(f"Invalid expires value: {self.expires}")
        if self.register_timeout <= 0 or self.keepalive_interval <= 0:
            raise ConfigError("Timeout and keepalive interval must be positive")

    @property
    def use_tls(self) -> bool:
        """Whether the connection is secured with TLS (``wss`` scheme)."""
        return urlsplit(self.ws_url).scheme == "wss"

    @property
    def ws_host(self) -> str:
        hostname = urlsplit(self.ws_url).hostname
        assert hostname is not None
        return hostname

    @property
    def ws_port(self) -> int:
        url = urlsplit(self.ws_url)
        return url.port or DEFAULT_PORTS[url.scheme]

    @property
    def ws_host_header(self) -> str:
        """The ``Host`` header value, including the port only when not the default."""
        url = urlsplit(self.ws_url)
        if url.port is None or url.port == DEFAULT_PORTS[url.scheme]:
            return self.ws_host
        return f"{self.ws_host}:{url.port}"

    @property
    def ws_resource(self) -> str:
        """The request target for the upgrade request: path and query."""
        url = urlsplit(self.ws_url)
        resource: str = url.path or "/"
        if url.query:
            resource += f"?{url.query}"
        return resource

    @classmethod
    def from_mapping(
        cls, data: Mapping[str, Any], *, instance_id: uuid.UUID | None = None
    ) -> Self:
        """
        Create a configuration from a mapping, e.g. a parsed TOML table.
        Unknown keys are rejected. An explicit ``instance_id`` argument takes
        precedence over one found in the mapping.
        """
        values: dict[str, Any] = dict(data)
        unknown = set(values) - set(cls.__dataclass_fields__)
        if unknown:
            raise ConfigError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")
        if instance_id is not None:
            values["instance_id"] = instance_id
        elif "instance_id" in values:
            try:
                values["instance_id"] = uuid.UUID(str(values["instance_id"]))
            except ValueError as exc:
                raise ConfigError(
                    f"Invalid instance_id: {values['instance_id']}"
                ) from exc
        try:
            return cls(**values)
        except TypeError as exc:
            raise ConfigError(f"Invalid configuration: {exc}") from exc


class InstanceIdStore:
    """
    File-backed store for the device instance identifier (``+sip.instance``),
    which must stay the same across application runs.

    :param path: Path of the TOML file holding the identifier.
    """

    def __init__(self, path: str | os.PathLike[str]):
        self.path: Path = Path(path)

    def load(self) -> uuid.UUID | None:
        """Load the persisted identifier, or None if missing or invalid."""
        if not self.path.exists():
            return None
        try:
            data: dict[str, Any] = toml.load(os.fspath(self.path))
            return uuid.UUID(str(data[INSTANCE_ID_KEY]))
        except (toml.TomlDecodeError, KeyError, ValueError) as exc:
            _logger.warning(f"Ignoring invalid instance id store {self.path}: {exc!r}")
            return None

    def save(self, instance_id: uuid.UUID) -> None:
        """Persist the given identifier, replacing any previous one."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("w", encoding="utf-8") as fp:
            toml.dump({INSTANCE_ID_KEY: str(instance_id)}, fp)

    def load_or_create(self) -> uuid.UUID:
        """Return the persisted identifier, generating and saving a new one if needed."""
        instance_id = self.load()
        if instance_id is None:
            instance_id = uuid.uuid4()
            _logger.info(f"Generated new instance id {instance_id}")
            self.save(instance_id)
        return instance_id


def load_config(
    path: str | os.PathLike[str],
    *,
    instance_id: uuid.UUID | None = None,
    store: InstanceIdStore | None = None,
) -> RegistrationConfig:
    """
    Load the registration configuration from the ``[registration]`` table
    of a TOML file.

    The instance identifier is taken, in order of precedence, from the
    ``instance_id`` argument, the ``store`` or the file itself.
    When none of them provides one, a random identifier is used.
    """
    try:
        data: dict[str, Any] = toml.load(os.fspath(path))
    except (OSError, ValueError) as exc:
        raise ConfigError(f"Cannot read configuration file {path}: {exc}") from exc

    section = data.get(CONFIG_SECTION)
    if not isinstance(section, Mapping):
        raise ConfigError(f"Missing [{CONFIG_SECTION}] table in {path}")

    if instance_id is None and store is not None:
        instance_id = store.load_or_create()
    return RegistrationConfig.from_mapping(section, instance_id=instance_id)
