"""
Log record model and the request context it is enriched with.
"""

from contextvars import ContextVar, Token
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import IntEnum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Union


class Severity(IntEnum):
    """Record severities. Values line up with the stdlib logging levels."""

    DEBUG = 10
    INFO = 20
    WARNING = 30
    ERROR = 40

    @classmethod
    def parse(cls, value: Union["Severity", str, int]) -> "Severity":
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls[value.strip().upper()]
            except KeyError:
                raise ValueError(f"Unknown severity: {value!r}") from None
        return cls(value)

    @property
    def label(self) -> str:
        return self.name.lower()


@dataclass(frozen=True)
class RequestMeta:
    """Who made the request a record was produced for."""
    ip: str = "unknown"
    method: str = "unknown"
    uri: str = "unknown"
    user_agent: str = "unknown"

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)


_request_meta: ContextVar[RequestMeta] = ContextVar("gatekeeper_request_meta", default=RequestMeta())


def bind_request_meta(meta: RequestMeta) -> Token:
    """Make meta the request context for the current task."""
    return _request_meta.set(meta)


def reset_request_meta(token: Token) -> None:
    _request_meta.reset(token)


def current_request_meta() -> RequestMeta:
    return _request_meta.get()


@dataclass(frozen=True)
class LogRecord:
    """
    Immutable log record.

    The same instance is handed to every sink, so context is stored as a
    read-only mapping.
    """
    timestamp: datetime
    severity: Severity
    message: str
    context: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    request: RequestMeta = field(default_factory=RequestMeta)

    @classmethod
    def create(
        cls,
        severity: Union[Severity, str],
        message: str,
        context: Optional[Mapping[str, Any]] = None,
        request: Optional[RequestMeta] = None,
        timestamp: Optional[datetime] = None,
    ) -> "LogRecord":
        """Build a record, capturing the request context of the caller now."""
        return cls(
            timestamp=timestamp or datetime.now(timezone.utc),
            severity=Severity.parse(severity),
            message=message,
            context=MappingProxyType(dict(context or {})),
            request=request if request is not None else current_request_meta(),
        )
