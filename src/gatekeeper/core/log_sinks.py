"""
Log sinks: destinations behind one write contract.

Each sink decides which records it accepts and raises SinkError when a
write fails. The fan-out logger handles the failure; sinks never swallow
their own errors.
"""

import asyncio
import json
import logging
import smtplib
import socket
from abc import ABC, abstractmethod
from email.message import EmailMessage
from logging.handlers import SysLogHandler
from pathlib import Path
from typing import Optional, Tuple, Union

import aiofiles
import structlog
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from .database import system_logs
from .exceptions import SinkError
from .log_record import LogRecord, Severity

logger = structlog.get_logger(__name__)


def format_record(record: LogRecord) -> str:
    """
    Render a record as a single log line.

    Format: [YYYY-mm-dd HH:MM:SS] [severity]: message Context: {...} Request: {...}
    """
    line = f"[{record.timestamp:%Y-%m-%d %H:%M:%S}] [{record.severity.label}]: {record.message}"
    if record.context:
        line += " Context: " + json.dumps(dict(record.context), default=str, sort_keys=True)
    line += " Request: " + json.dumps(record.request.to_dict(), sort_keys=True)
    return line


class LogSink(ABC):
    """Base class for log destinations."""

    name: str = "sink"
    min_severity: Severity = Severity.DEBUG
    # Failures of a silent sink leave no secondary record
    silent_failures: bool = False

    def accepts(self, record: LogRecord) -> bool:
        return record.severity >= self.min_severity

    @abstractmethod
    async def write(self, record: LogRecord) -> None:
        """Deliver one record. Raises SinkError on failure."""

    async def close(self) -> None:
        return None


class FileSink(LogSink):
    """Appends records to one file per day: <directory>/<YYYY-MM-DD>.log"""

    name = "file"

    def __init__(self, directory: Path, min_severity: Severity = Severity.DEBUG) -> None:
        self.directory = Path(directory)
        self.min_severity = min_severity
        self._lock = asyncio.Lock()

    def path_for(self, record: LogRecord) -> Path:
        return self.directory / f"{record.timestamp:%Y-%m-%d}.log"

    async def write(self, record: LogRecord) -> None:
        path = self.path_for(record)
        line = format_record(record) + "\n"
        try:
            async with self._lock:
                self.directory.mkdir(parents=True, exist_ok=True)
                async with aiofiles.open(path, "a", encoding="utf-8") as f:
                    await f.write(line)
        except OSError as e:
            raise SinkError(self.name, f"Cannot append to {path}: {e}") from e


class DatabaseSink(LogSink):
    """Inserts records into system_logs. Debug records are never written."""

    name = "database"
    min_severity = Severity.INFO

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def _insert(self, record: LogRecord) -> None:
        context = {**dict(record.context), **record.request.to_dict()}
        with self.engine.begin() as conn:
            conn.execute(
                system_logs.insert().values(
                    level=record.severity.label,
                    message=record.message,
                    context=json.dumps(context, default=str),
                    created_at=record.timestamp,
                )
            )

    async def write(self, record: LogRecord) -> None:
        try:
            await asyncio.to_thread(self._insert, record)
        except SQLAlchemyError as e:
            raise SinkError(self.name, f"Cannot insert log record: {type(e).__name__}") from e


class _RaisingSysLogHandler(SysLogHandler):
    """SysLogHandler that re-raises send errors instead of printing them."""

    def handleError(self, record: logging.LogRecord) -> None:
        raise


def parse_syslog_address(address: str) -> Union[str, Tuple[str, int]]:
    """'host:port' becomes a UDP address, anything else a unix socket path."""
    host, sep, port = address.rpartition(":")
    if sep and host and port.isdigit():
        return (host, int(port))
    return address


class SyslogSink(LogSink):
    """Forwards records to syslog, by default only errors."""

    name = "syslog"

    def __init__(
        self,
        address: str = "/dev/log",
        min_severity: Severity = Severity.ERROR,
        ident: str = "gatekeeper",
        facility: int = SysLogHandler.LOG_USER,
    ) -> None:
        self.address = parse_syslog_address(address)
        self.min_severity = min_severity
        self.ident = ident
        self.facility = facility
        self._handler: Optional[SysLogHandler] = None

    def _get_handler(self) -> SysLogHandler:
        if self._handler is None:
            handler = _RaisingSysLogHandler(
                address=self.address,
                facility=self.facility,
                socktype=socket.SOCK_DGRAM,
            )
            handler.ident = f"{self.ident}: "
            handler.setFormatter(logging.Formatter("%(message)s"))
            self._handler = handler
        return self._handler

    def _send(self, record: LogRecord) -> None:
        handler = self._get_handler()
        stdlib_record = logging.LogRecord(
            name=self.ident,
            level=int(record.severity),
            pathname=__file__,
            lineno=0,
            msg=format_record(record),
            args=None,
            exc_info=None,
        )
        handler.emit(stdlib_record)

    async def write(self, record: LogRecord) -> None:
        try:
            await asyncio.to_thread(self._send, record)
        except OSError as e:
            raise SinkError(self.name, f"Cannot send to syslog: {e}") from e

    async def close(self) -> None:
        if self._handler is not None:
            self._handler.close()
            self._handler = None


class EmailSink(LogSink):
    """
    Mails error records to an operator address.

    Best effort: failures raise like any other sink, but the fan-out logger
    absorbs them without a secondary record.
    """

    name = "email"
    min_severity = Severity.ERROR
    silent_failures = True

    def __init__(
        self,
        to_address: str,
        from_address: str,
        smtp_host: str,
        smtp_port: int = 587,
        username: Optional[str] = None,
        password: Optional[str] = None,
        starttls: bool = True,
        timeout: float = 10.0,
        app_name: str = "CryptInvest API",
        enabled: bool = True,
    ) -> None:
        self.to_address = to_address
        self.from_address = from_address
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.username = username
        self.password = password
        self.starttls = starttls
        self.timeout = timeout
        self.app_name = app_name
        self.enabled = enabled

    def accepts(self, record: LogRecord) -> bool:
        return self.enabled and super().accepts(record)

    def build_message(self, record: LogRecord) -> EmailMessage:
        message = EmailMessage()
        message["Subject"] = f"[{self.app_name}] Critical error detected"
        message["From"] = self.from_address
        message["To"] = self.to_address
        message.set_content(format_record(record))
        return message

    def _send(self, message: EmailMessage) -> None:
        with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as smtp:
            if self.starttls:
                smtp.starttls()
            if self.username:
                smtp.login(self.username, self.password or "")
            smtp.send_message(message)

    async def write(self, record: LogRecord) -> None:
        message = self.build_message(record)
        try:
            await asyncio.to_thread(self._send, message)
        except (smtplib.SMTPException, OSError) as e:
            raise SinkError(self.name, f"Cannot send alert mail: {e}") from e
