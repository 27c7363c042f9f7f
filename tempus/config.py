"""Application configuration built from defaults and environment variables."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import MISSING, dataclass, field, fields
from datetime import timedelta

from tempus.errors import ConfigError, ValidationError

_U16 = (0, 2**16 - 1)
_U32 = (0, 2**32 - 1)
_U64 = (0, 2**64 - 1)
_I32 = (-(2**31), 2**31 - 1)


def _int(default: int, bounds: tuple[int, int]):
    return field(default=default, metadata={"bounds": bounds})


@dataclass(frozen=True)
class DatabaseConfig:
    """Connection pool settings for the database."""

    url: str
    max_connections: int = _int(100, _U32)
    min_connections: int = _int(30, _U32)
    connect_timeout_secs: int = _int(8, _U64)
    acquire_timeout_secs: int = _int(8, _U64)
    idle_timeout_secs: int = _int(60, _U64)
    max_lifetime_secs: int = _int(60, _U64)

    def connect_timeout(self) -> timedelta:
        return timedelta(seconds=self.connect_timeout_secs)

    def acquire_timeout(self) -> timedelta:
        return timedelta(seconds=self.acquire_timeout_secs)

    def idle_timeout(self) -> timedelta:
        return timedelta(seconds=self.idle_timeout_secs)

    def max_lifetime(self) -> timedelta:
        return timedelta(seconds=self.max_lifetime_secs)


@dataclass(frozen=True)
class EngineConfig:
    """Job processing settings."""

    max_concurrent_jobs: int = _int(10, _U64)
    retry_attempts: int = _int(3, _I32)
    base_delay_minutes: int = _int(2, _U32)


@dataclass(frozen=True)
class HttpConfig:
    """HTTP server and client settings."""

    port: int = _int(3000, _U16)
    pool_idle_timeout_secs: int = _int(30, _U64)
    request_timeout_secs: int = _int(30, _U64)

    def pool_idle_timeout(self) -> timedelta:
        return timedelta(seconds=self.pool_idle_timeout_secs)

    def request_timeout(self) -> timedelta:
        return timedelta(seconds=self.request_timeout_secs)


@dataclass(frozen=True)
class KafkaConfig:
    """Kafka producer settings."""

    bootstrap_servers: str = "localhost:9092"
    default_topic: str = "tempus-events"
    producer_timeout_secs: int = _int(30, _U64)
    producer_retries: int = _int(5, _U32)
    batch_size: int = _int(16384, _U32)
    compression_type: str = "snappy"

    def producer_timeout(self) -> timedelta:
        return timedelta(seconds=self.producer_timeout_secs)


_SECTIONS = {
    "database": DatabaseConfig,
    "engine": EngineConfig,
    "http": HttpConfig,
    "kafka": KafkaConfig,
}


def _convert(key: str, raw: str, spec) -> object:
    bounds = spec.metadata.get("bounds")
    if bounds is None:
        return raw
    try:
        value = int(raw.strip())
    except ValueError:
        raise ConfigError(f"invalid value {raw!r} for `{key}`: expected an integer") from None
    low, high = bounds
    if not low <= value <= high:
        raise ConfigError(f"value {value} for `{key}` is out of range [{low}, {high}]")
    return value


def _build_section(name: str, section_cls, values: Mapping[str, str]):
    kwargs = {}
    for spec in fields(section_cls):
        key = f"{name}.{spec.name}"
        if spec.name in values:
            kwargs[spec.name] = _convert(key, values[spec.name], spec)
        elif spec.default is MISSING:
            raise ConfigError(f"missing configuration field `{key}`")
    return section_cls(**kwargs)


@dataclass(frozen=True)
class AppConfig:
    """The complete application configuration."""

    database: DatabaseConfig
    engine: EngineConfig
    http: HttpConfig
    kafka: KafkaConfig

    @classmethod
    def load(cls, environ: Mapping[str, str] | None = None) -> AppConfig:
        """Build the configuration from defaults overridden by environment variables.

        A variable ``SECTION_FIELD`` (split on every underscore) overrides
        ``section.field``; names with further underscores address nested keys
        that no setting uses, so they are ignored.
        """
        env = os.environ if environ is None else environ
        overrides: dict[str, dict[str, str]] = {}
        for key, value in env.items():
            parts = key.lower().split("_")
            if len(parts) == 2 and parts[0] in _SECTIONS:
                overrides.setdefault(parts[0], {})[parts[1]] = value

        config = cls(
            **{
                name: _build_section(name, section_cls, overrides.get(name, {}))
                for name, section_cls in _SECTIONS.items()
            }
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Raise ValidationError if the settings are inconsistent."""
        if not self.database.url:
            raise ValidationError("Database URL cannot be empty")
        if self.database.max_connections < self.database.min_connections:
            raise ValidationError("Max connections cannot be less than min connections")
        if self.engine.max_concurrent_jobs == 0:
            raise ValidationError("Max concurrent jobs must be greater than 0")
        if not self.kafka.bootstrap_servers:
            raise ValidationError("Kafka bootstrap servers cannot be empty")
        if not self.kafka.default_topic:
            raise ValidationError("Kafka default topic cannot be empty")