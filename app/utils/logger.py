"""Structured JSON logging with OpenTelemetry trace correlation"""
import logging
import json
import sys
from datetime import datetime, timezone
from typing import Optional
from contextvars import ContextVar

from opentelemetry import trace

trace_id_var: ContextVar[Optional[str]] = ContextVar('trace_id', default=None)


class StructuredLogger:
    """
    Structured logger emitting one JSON object per line.

    - Trace ID taken from the current OpenTelemetry span, or from the
      request-scoped context var when no span is active
    - Keyword arguments become top-level fields of the entry
    - Convenience method for two-factor security events
    """

    def __init__(self, name: str, level: str = "INFO"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(getattr(logging, level.upper()))

        if not self.logger.handlers:
            handler = logging.StreamHandler(sys.stdout)
            handler.setFormatter(logging.Formatter('%(message)s'))
            self.logger.addHandler(handler)

    def _log_structured(self, level: str, message: str, **kwargs):
        """Log structured data with optional context fields and trace ID"""
        log_entry = {
            "severity": level,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "logger": self.logger.name,
            "message": message,
        }

        trace_id = self._get_trace_id_from_otel() or trace_id_var.get()
        if trace_id:
            log_entry["trace_id"] = trace_id

        if kwargs:
            log_entry.update(kwargs)

        getattr(self.logger, level.lower())(json.dumps(log_entry, default=str))

    def _get_trace_id_from_otel(self) -> Optional[str]:
        """Get trace ID from OpenTelemetry current span context"""
        span = trace.get_current_span()
        span_context = span.get_span_context()
        if span_context.is_valid:
            return format(span_context.trace_id, '032x')
        return None

    def info(self, message: str, **kwargs):
        self._log_structured("INFO", message, **kwargs)

    def warning(self, message: str, **kwargs):
        self._log_structured("WARNING", message, **kwargs)

    def error(self, message: str, **kwargs):
        self._log_structured("ERROR", message, **kwargs)

    def debug(self, message: str, **kwargs):
        self._log_structured("DEBUG", message, **kwargs)

    def critical(self, message: str, **kwargs):
        self._log_structured("CRITICAL", message, **kwargs)

    def log_security_event(
        self,
        event: str,
        user_id: Optional[str],
        success: bool = True,
        method: Optional[str] = None,
        **kwargs
    ):
        """
        Convenience method for logging two-factor security events.

        Never pass codes, secrets or hashes here.

        Args:
            event: Event name (e.g., "enrollment_confirmed", "code_rejected")
            user_id: Subject user
            success: Whether the operation succeeded
            method: Second-factor method involved (totp, email, password)
            **kwargs: Additional context
        """
        log_data = {
            "security_event": event,
            "user_id": user_id,
            "success": success,
            **kwargs
        }

        if method is not None:
            log_data["method"] = method

        if success:
            self.info(f"Two-factor {event}", **log_data)
        else:
            self.warning(f"Two-factor {event} failed", **log_data)


def get_logger(name: str, level: str = "INFO") -> StructuredLogger:
    """Get or create logger instance"""
    return StructuredLogger(name, level)


def set_trace_id(trace_id: Optional[str]):
    """Set trace ID in context for current request"""
    trace_id_var.set(trace_id)


def get_trace_id() -> Optional[str]:
    """Get current trace ID from context"""
    return trace_id_var.get()
