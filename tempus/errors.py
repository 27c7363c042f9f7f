"""Error types raised across the scheduler."""

from __future__ import annotations


class TempusError(Exception):
    """Base class for every error the scheduler raises."""

    prefix = "Tempus error"

    def __init__(self, detail: object = "") -> None:
        super().__init__(detail)
        self.detail = detail

    def __str__(self) -> str:
        return f"{self.prefix}: {self.detail}"


class DatabaseError(TempusError):
    """A database operation failed."""

    prefix = "Database error"


class HttpError(TempusError):
    """An outgoing HTTP request failed."""

    prefix = "HTTP request failed"


class ConfigError(TempusError):
    """The configuration could not be built."""

    prefix = "Configuration error"


class EnvError(TempusError):
    """An environment file or variable could not be read."""

    prefix = "Environment variable error"


class JobProcessingError(TempusError):
    """A job could not be processed."""

    prefix = "Job processing error"


class ValidationError(TempusError):
    """Input or configuration failed validation."""

    prefix = "Validation error"


class SerializationError(TempusError):
    """A value could not be serialized or deserialized."""

    prefix = "Serialization error"


class IoError(TempusError):
    """An input/output operation failed."""

    prefix = "IO error"


class KafkaError(TempusError):
    """Publishing to Kafka failed."""

    prefix = "Kafka error"