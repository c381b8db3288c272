"""
Strukturiertes Logging Setup für Scribeflow
"""

import logging
import structlog
from datetime import datetime, timezone
from typing import Optional
from scribeflow.config import settings


def setup_logging():
    """Konfiguriert strukturiertes Logging"""

    # Timestamper für konsistente Zeitstempel
    timestamper = structlog.processors.TimeStamper(fmt="ISO")

    # Processor-Chain definieren
    processors = [
        structlog.processors.add_log_level,
        timestamper,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if settings.environment == "development":
        # Development: Colored console output
        processors.extend([
            structlog.dev.ConsoleRenderer(colors=True)
        ])
    else:
        # Production: JSON output
        processors.extend([
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer()
        ])

    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    # Structlog konfigurieren
    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )


def get_logger(name: Optional[str] = None):
    """Erstellt einen konfigurierten Logger"""
    return structlog.get_logger(name or __name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class AuditLogger:
    """Spezieller Logger für Audit-Events"""

    def __init__(self, enabled: bool = True):
        self.logger = get_logger("audit")
        self.enabled = enabled

    def log_api_request(
        self,
        request_id: str,
        endpoint: str,
        method: str,
        subject: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
        **kwargs
    ):
        """Loggt API-Anfragen für Audit-Zwecke"""
        if not self.enabled:
            return
        self.logger.info(
            "api_request",
            request_id=request_id,
            endpoint=endpoint,
            method=method,
            subject=subject,
            user_agent=user_agent,
            ip_address=ip_address,
            timestamp=_now(),
            **kwargs
        )

    def log_batch_write(
        self,
        session_id: str,
        batch_id: str,
        fragment_count: int,
        status: str,
        latency_ms: int,
        attempts: int,
        **kwargs
    ):
        """Loggt Schreibvorgänge von Transkript-Batches"""
        if not self.enabled:
            return
        self.logger.info(
            "batch_write",
            session_id=session_id,
            batch_id=batch_id,
            fragment_count=fragment_count,
            status=status,
            latency_ms=latency_ms,
            attempts=attempts,
            timestamp=_now(),
            **kwargs
        )

    def log_provider_event(
        self,
        session_id: str,
        provider_id: str,
        event: str,
        **kwargs
    ):
        """Loggt Zustandswechsel der Transkriptions-Provider"""
        if not self.enabled:
            return
        self.logger.info(
            "provider_event",
            session_id=session_id,
            provider_id=provider_id,
            provider_event=event,
            timestamp=_now(),
            **kwargs
        )

    def log_workflow_step(
        self,
        session_id: str,
        step: str,
        status: str,
        duration_ms: Optional[int] = None,
        **kwargs
    ):
        """Loggt Ergebnisse einzelner Workflow-Schritte"""
        if not self.enabled:
            return
        self.logger.info(
            "workflow_step",
            session_id=session_id,
            step=step,
            status=status,
            duration_ms=duration_ms,
            timestamp=_now(),
            **kwargs
        )

    def log_error(
        self,
        request_id: str,
        error_type: str,
        error_message: str,
        stack_trace: Optional[str] = None,
        **kwargs
    ):
        """Loggt Fehler-Events"""
        if not self.enabled:
            return
        self.logger.error(
            "error_event",
            request_id=request_id,
            error_type=error_type,
            error_message=error_message,
            stack_trace=stack_trace,
            timestamp=_now(),
            **kwargs
        )


# Global audit logger instance
audit_logger = AuditLogger(enabled=settings.audit_log_enabled)
