"""
Fan-out logger.

Dispatches each accepted record to an ordered list of sinks. A failing sink
never stops delivery to the others and never raises to the caller:
- the failure is written as a secondary record to the file sink only
- if the file sink is the one failing, the process logger gets it instead
- silent sinks (email) are absorbed without any secondary record
"""

import asyncio
from typing import Any, List, Mapping, Optional, Sequence, Set, Union

import structlog
from sqlalchemy.engine import Engine

from ..config import Settings
from .log_record import LogRecord, Severity
from .log_sinks import DatabaseSink, EmailSink, FileSink, LogSink, SyslogSink
from .metrics import MetricsCollector

logger = structlog.get_logger(__name__)


class FanoutLogger:
    """
    Severity-filtered, multi-destination application logger.

    Records below min_severity are dropped before any sink runs. Request
    metadata is captured when the record is created, not when a sink writes.
    """

    def __init__(
        self,
        sinks: Sequence[LogSink] = (),
        min_severity: Union[Severity, str] = Severity.DEBUG,
        fallback_sink: Optional[LogSink] = None,
        metrics: Optional[MetricsCollector] = None,
    ) -> None:
        self.sinks: List[LogSink] = list(sinks)
        self.min_severity = Severity.parse(min_severity)
        self.metrics = metrics
        if fallback_sink is None:
            fallback_sink = next((s for s in self.sinks if isinstance(s, FileSink)), None)
        self.fallback_sink = fallback_sink
        self._pending: Set["asyncio.Task[None]"] = set()

    def is_enabled_for(self, severity: Union[Severity, str]) -> bool:
        return Severity.parse(severity) >= self.min_severity

    def _make_record(
        self,
        severity: Union[Severity, str],
        message: str,
        context: Optional[Mapping[str, Any]],
    ) -> Optional[LogRecord]:
        severity = Severity.parse(severity)
        if severity < self.min_severity:
            return None
        if self.metrics:
            self.metrics.record_log(severity.label)
        return LogRecord.create(severity, message, context)

    async def log(
        self,
        severity: Union[Severity, str],
        message: str,
        context: Optional[Mapping[str, Any]] = None,
    ) -> None:
        """Create a record and wait until every sink has handled it."""
        record = self._make_record(severity, message, context)
        if record is not None:
            await self.dispatch(record)

    def emit(
        self,
        severity: Union[Severity, str],
        message: str,
        context: Optional[Mapping[str, Any]] = None,
    ) -> None:
        """
        Create a record now and deliver it in the background.

        Outside a running event loop the record is delivered before returning.
        """
        record = self._make_record(severity, message, context)
        if record is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(self.dispatch(record))
            return
        task = loop.create_task(self.dispatch(record))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def debug(self, message: str, **context: Any) -> None:
        await self.log(Severity.DEBUG, message, context)

    async def info(self, message: str, **context: Any) -> None:
        await self.log(Severity.INFO, message, context)

    async def warning(self, message: str, **context: Any) -> None:
        await self.log(Severity.WARNING, message, context)

    async def error(self, message: str, **context: Any) -> None:
        await self.log(Severity.ERROR, message, context)

    async def dispatch(self, record: LogRecord) -> None:
        """Hand record to every accepting sink, in order. Never raises."""
        for sink in self.sinks:
            try:
                if not sink.accepts(record):
                    continue
                await sink.write(record)
            except Exception as e:
                await self._sink_failed(sink, record, e)

    async def _sink_failed(self, sink: LogSink, record: LogRecord, error: Exception) -> None:
        if self.metrics:
            self.metrics.record_sink_failure(sink.name)
        if sink.silent_failures:
            return

        secondary = LogRecord.create(
            Severity.ERROR,
            f"Log sink '{sink.name}' failed",
            {
                "sink": sink.name,
                "error": str(error),
                "error_type": type(error).__name__,
                "original_severity": record.severity.label,
                "original_message": record.message,
            },
            request=record.request,
        )

        if self.fallback_sink is not None and self.fallback_sink is not sink:
            try:
                await self.fallback_sink.write(secondary)
                return
            except Exception as fallback_error:
                error = fallback_error

        logger.error(
            "Log sink failed",
            sink=sink.name,
            error=str(error),
            error_type=type(error).__name__,
            original_message=record.message,
        )

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """Wait for every background emit to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def aclose(self) -> None:
        """Drain pending records and release sink resources."""
        await self.drain()
        for sink in self.sinks:
            try:
                await sink.close()
            except Exception as e:
                logger.warning("Error closing log sink", sink=sink.name, error=str(e))


def build_fanout_logger(
    settings: Settings,
    engine: Optional[Engine] = None,
    metrics: Optional[MetricsCollector] = None,
) -> FanoutLogger:
    """Build the sink list (file, database, syslog, email) from settings."""
    config = settings.logging
    sinks: List[LogSink] = []

    if config.file_enabled:
        sinks.append(FileSink(config.directory))

    if config.database_enabled:
        if engine is None:
            raise ValueError("database sink enabled but no database engine configured")
        sinks.append(DatabaseSink(engine))

    if config.syslog_enabled:
        sinks.append(SyslogSink(
            address=config.syslog_address,
            min_severity=Severity.parse(config.syslog_min_severity),
        ))

    if config.email_enabled:
        sinks.append(EmailSink(
            to_address=config.email_to,
            from_address=config.email_from,
            smtp_host=config.smtp_host,
            smtp_port=config.smtp_port,
            username=config.smtp_username,
            password=config.smtp_password,
            starttls=config.smtp_starttls,
            timeout=config.smtp_timeout_seconds,
            app_name=settings.app_name,
        ))

    logger.info(
        "Fan-out logger configured",
        sinks=[s.name for s in sinks],
        min_severity=config.min_severity,
    )
    return FanoutLogger(sinks, min_severity=config.min_severity, metrics=metrics)
