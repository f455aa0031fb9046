"""
ebusd MQTT bridge configuration.

Single source for runtime configuration. Values come from environment variables,
optionally loaded from standard env files.

Priority (lowest -> highest):
1) /etc/ebusd/mqtt.env (system install)
2) ~/.config/ebusd-mqtt/.env (user install)
3) ./.env (project override)
4) process environment variables (always win)
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from importlib.metadata import PackageNotFoundError, version as _pkg_version
from pathlib import Path
from typing import Iterable, Optional

from ebusd_mqtt.catalog import OutputFormat
from ebusd_mqtt.mqtt_topics import TopicTemplate, TopicTemplateError

PROTOCOL_VERSIONS = ("3.1", "3.1.1")

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


class ConfigError(ValueError):
    """Raised when configuration is missing or invalid."""


def package_version() -> str:
    try:
        return _pkg_version("ebusd-mqtt")
    except PackageNotFoundError:
        return "0.0.0+dev"


def _env_paths() -> Iterable[Path]:
    # 1) system install
    yield Path("/etc/ebusd/mqtt.env")

    # 2) user config dir
    if sys.platform == "win32":
        base = Path(os.environ.get("APPDATA", str(Path.home())))
    else:
        base = Path(os.environ.get("XDG_CONFIG_HOME", str(Path.home() / ".config")))
    yield base / "ebusd-mqtt" / ".env"

    # 3) project override
    yield Path(".env")


def _optional_env(key: str) -> Optional[str]:
    v = os.getenv(key)
    return v if v else None


def _parse_int(key: str, raw: str) -> int:
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"Invalid integer for {key}: {raw!r}") from exc


def _parse_bool(key: str, default: bool = False) -> bool:
    raw = os.getenv(key)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ConfigError(f"Invalid boolean for {key}: {raw!r}")


def validate_topic(topic: str) -> TopicTemplate:
    """Parse the MQTT_TOPIC value into the bridge topic template."""
    if not topic or "#" in topic or "+" in topic or topic.endswith("/"):
        raise ConfigError(f"Invalid MQTT_TOPIC: {topic!r}")
    try:
        return TopicTemplate.create(topic)
    except TopicTemplateError as exc:
        raise ConfigError(f"Malformed MQTT_TOPIC: {exc}") from exc


@dataclass(frozen=True, slots=True)
class BridgeConfig:
    mqtt_host: str
    mqtt_port: int
    client_id: str
    username: Optional[str]
    password: Optional[str]
    topic: str
    retain: bool
    integration_file: Optional[str]
    json: bool
    verbose: bool
    log_lib: bool
    protocol_version: str
    ignore_invalid_params: bool
    only_changes: bool
    ca_file: Optional[str]
    ca_path: Optional[str]
    cert_file: Optional[str]
    key_file: Optional[str]
    key_password: Optional[str]
    insecure: bool
    strict: bool
    access_levels: str
    version: str

    @property
    def output_format(self) -> OutputFormat:
        fmt = OutputFormat.NONE
        if self.json:
            fmt |= OutputFormat.JSON | OutputFormat.NAMES
        if self.verbose:
            fmt |= OutputFormat.NAMES | OutputFormat.UNITS | OutputFormat.COMMENTS | OutputFormat.ALL_ATTRS
        return fmt

    @property
    def uses_tls(self) -> bool:
        return bool(self.ca_file or self.ca_path)


def load_config(*, dotenv_enabled: bool = True) -> BridgeConfig:
    """
    Load config by reading env files (if python-dotenv is installed) and then
    validating environment variables.

    Returns an immutable BridgeConfig. Raises ConfigError on failure.
    """
    if dotenv_enabled:
        try:
            from dotenv import load_dotenv  # type: ignore
        except Exception:
            load_dotenv = None  # type: ignore

        if load_dotenv is not None:
            for p in _env_paths():
                if p.is_file():
                    # do not override existing env vars; later files can fill missing
                    load_dotenv(p, override=False)

    mqtt_host = os.getenv("MQTT_HOST", "localhost")
    if not mqtt_host:
        raise ConfigError("MQTT_HOST must not be empty")
    mqtt_port = _parse_int("MQTT_PORT", os.getenv("MQTT_PORT") or "1883")
    if not (1 <= mqtt_port <= 65535):
        raise ConfigError(f"MQTT_PORT out of range: {mqtt_port}")

    version = package_version()
    client_id = os.getenv("MQTT_CLIENT_ID") or f"ebusd_{version}_{os.getpid()}"

    username = os.getenv("MQTT_USER")
    password = os.getenv("MQTT_PASS")
    if password is not None and username is None:
        username = "ebusd"

    topic = os.getenv("MQTT_TOPIC", "ebusd")
    validate_topic(topic)

    integration_file = _optional_env("MQTT_INTEGRATION_FILE")
    if integration_file == "/":
        raise ConfigError("Invalid MQTT_INTEGRATION_FILE: '/'")

    protocol_version = os.getenv("MQTT_VERSION", "3.1")
    if protocol_version not in PROTOCOL_VERSIONS:
        raise ConfigError(f"Invalid MQTT_VERSION: {protocol_version!r} (allowed: 3.1, 3.1.1)")

    ca_file = ca_path = None
    ca = _optional_env("MQTT_CA")
    if ca is not None:
        if ca.endswith("/"):
            ca_path = ca
        else:
            ca_file = ca

    return BridgeConfig(
        mqtt_host=mqtt_host,
        mqtt_port=mqtt_port,
        client_id=client_id,
        username=username,
        password=password,
        topic=topic,
        retain=_parse_bool("MQTT_RETAIN"),
        integration_file=integration_file,
        json=_parse_bool("MQTT_JSON"),
        verbose=_parse_bool("MQTT_VERBOSE"),
        log_lib=_parse_bool("MQTT_LOG_LIB"),
        protocol_version=protocol_version,
        ignore_invalid_params=_parse_bool("MQTT_IGNORE_INVALID"),
        only_changes=_parse_bool("MQTT_CHANGES"),
        ca_file=ca_file,
        ca_path=ca_path,
        cert_file=_optional_env("MQTT_CERT"),
        key_file=_optional_env("MQTT_KEY"),
        key_password=os.getenv("MQTT_KEY_PASS"),
        insecure=_parse_bool("MQTT_INSECURE"),
        strict=_parse_bool("MQTT_STRICT"),
        access_levels=os.getenv("EBUSD_ACCESS_LEVELS", ""),
        version=version,
    )
