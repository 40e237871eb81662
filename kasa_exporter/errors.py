from __future__ import annotations

from enum import Enum


class KasaExporterError(Exception):
    pass


class CodecError(KasaExporterError):
    pass


class TruncatedFrame(CodecError):
    def __init__(self, expected: int, available: int) -> None:
        super().__init__(f"truncated frame: expected {expected} bytes, got {available}")
        self.expected = expected
        self.available = available


class InvalidPayload(CodecError):
    pass


class SchemaError(KasaExporterError):
    pass


class DirectoryError(KasaExporterError):
    pass


class ConfigError(ValueError):
    pass


class ErrorKind(str, Enum):
    UNREACHABLE = "unreachable"
    TIMEOUT = "timeout"
    PROTOCOL = "protocol"
    UNEXPECTED_SCHEMA = "unexpected_schema"


Truncated = TruncatedFrame
InvalidJSON = InvalidPayload
