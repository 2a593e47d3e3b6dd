"""
Security Event Logging Module

Structured JSON events for the screening service, written to a dedicated
`security` logger (logs/security.log):

- VALIDATION_FAILED: a screening request was rejected
- INVALID_IDENTIFIER: a national ID failed check-digit validation
- REPORT_TOKEN_MISS: a report was requested with an unknown token

SECURITY: user input is sanitized and identifiers are masked to their
last four characters before they reach the log.
"""

import logging
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Dict, Any
from dataclasses import dataclass, field as dataclass_field

from text_utils import mask_identifier, sanitize_for_logging


@dataclass
class SecurityEvent:
    """Structured security event for logging"""
    event_type: str  # VALIDATION_FAILED, INVALID_IDENTIFIER, REPORT_TOKEN_MISS
    severity: str  # WARNING, ERROR, CRITICAL
    field_name: str = ""
    error_code: str = ""
    sanitized_input: str = ""
    source: str = ""
    request_id: str = ""
    source_ip: str = ""
    additional_context: Dict[str, Any] = dataclass_field(default_factory=dict)
    timestamp: str = dataclass_field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization"""
        return {
            'timestamp': self.timestamp,
            'event_type': self.event_type,
            'severity': self.severity,
            'field': self.field_name,
            'error_code': self.error_code,
            'sanitized_input': self.sanitized_input,
            'source': self.source,
            'request_id': self.request_id,
            'source_ip': self.source_ip,
            'context': self.additional_context
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)


class SecurityLogger:
    """Handles security event logging with structured output

    Features:
    - Separate security.log file
    - JSON-formatted events for easy parsing
    - Automatic sanitization and identifier masking
    """

    def __init__(
        self,
        log_dir: str = "logs",
        log_level: int = logging.WARNING,
        enable_console: bool = False,
        enable_file: bool = True
    ):
        """Initialize security logger

        Args:
            log_dir: Directory for log files
            log_level: Minimum log level to record
            enable_console: Also output to console
            enable_file: Write to security.log file
        """
        self.log_dir = Path(log_dir)

        self.logger = logging.getLogger('security')
        self.logger.setLevel(log_level)
        self.logger.handlers.clear()

        formatter = logging.Formatter('%(asctime)s - SECURITY - %(levelname)s - %(message)s')

        if enable_file:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(self.log_dir / "security.log", encoding='utf-8')
            file_handler.setLevel(log_level)
            file_handler.setFormatter(formatter)
            self.logger.addHandler(file_handler)

        if enable_console:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(log_level)
            console_handler.setFormatter(formatter)
            self.logger.addHandler(console_handler)

    def _sanitize_input(self, text: str, max_length: int = 50) -> str:
        """Sanitize input for safe logging, truncated to max_length"""
        if not text:
            return ""
        sanitized = sanitize_for_logging(text)
        if len(sanitized) > max_length:
            return sanitized[:max_length] + "...(truncated)"
        return sanitized

    def _sanitize_context(self, context: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """Sanitize every value of a context dictionary (prevents JSON/log injection)"""
        if not context:
            return {}

        sanitized = {}
        for key, value in context.items():
            safe_key = self._sanitize_input(str(key), max_length=100) if key else "unknown"

            if value is None or isinstance(value, (bool, int, float)):
                sanitized[safe_key] = value
            elif isinstance(value, dict):
                sanitized[safe_key] = self._sanitize_context(value)
            elif isinstance(value, (list, tuple)):
                sanitized[safe_key] = [
                    item if isinstance(item, (bool, int, float, type(None)))
                    else self._sanitize_input(str(item), max_length=200)
                    for item in value
                ]
            else:
                sanitized[safe_key] = self._sanitize_input(str(value), max_length=200)

        return sanitized

    def _emit(self, event: SecurityEvent) -> None:
        if event.severity == "CRITICAL":
            self.logger.critical(event.to_json())
        elif event.severity == "ERROR":
            self.logger.error(event.to_json())
        else:
            self.logger.warning(event.to_json())

    def log_validation_failure(
        self,
        field: str,
        error_code: str,
        input_value: str,
        source: str = "",
        source_ip: str = "",
        request_id: str = "",
        additional_context: Optional[Dict[str, Any]] = None
    ) -> None:
        """Log a rejected screening request

        Args:
            field: Field name that failed validation
            error_code: Error code for the failure
            input_value: The input that failed (will be sanitized)
            source: Source module/function
            source_ip: Caller IP
            request_id: Correlation id (X-Request-ID)
            additional_context: Additional context data (will be sanitized)
        """
        self._emit(SecurityEvent(
            event_type="VALIDATION_FAILED",
            severity="WARNING",
            field_name=field,
            error_code=error_code,
            sanitized_input=self._sanitize_input(input_value),
            source=source,
            request_id=request_id,
            source_ip=source_ip,
            additional_context=self._sanitize_context(additional_context)
        ))

    def log_invalid_identifier(
        self,
        source_id: str,
        scheme: str,
        identifier: str,
        reason: str = "",
        source_ip: str = "",
        request_id: str = ""
    ) -> None:
        """Log an identifier that failed local check-digit validation

        Args:
            source_id: Connector that validated the identifier
            scheme: Identifier scheme (cpf, cnpj)
            identifier: The identifier, masked before logging
            reason: Validator message
        """
        self._emit(SecurityEvent(
            event_type="INVALID_IDENTIFIER",
            severity="WARNING",
            field_name=scheme,
            error_code="INVALID_IDENTIFIER",
            sanitized_input=mask_identifier(self._sanitize_input(identifier)),
            source=source_id,
            request_id=request_id,
            source_ip=source_ip,
            additional_context=self._sanitize_context({'reason': reason})
        ))

    def log_token_miss(self, token: str, source: str = "", source_ip: str = "",
                       request_id: str = "") -> None:
        """Log a report request with an unknown retrieval token (token is masked)"""
        self._emit(SecurityEvent(
            event_type="REPORT_TOKEN_MISS",
            severity="WARNING",
            field_name="report_token",
            error_code="REPORT_NOT_FOUND",
            sanitized_input=mask_identifier(self._sanitize_input(token)),
            source=source,
            request_id=request_id,
            source_ip=source_ip
        ))


# Global security logger instance
_security_logger: Optional[SecurityLogger] = None


def get_security_logger(
    log_dir: str = "logs",
    enable_console: bool = False,
    enable_file: bool = True
) -> SecurityLogger:
    """Get or create the global security logger instance

    Args:
        log_dir: Directory for log files
        enable_console: Also output to console
        enable_file: Write to security.log

    Returns:
        SecurityLogger instance
    """
    global _security_logger
    if _security_logger is None:
        _security_logger = SecurityLogger(
            log_dir=log_dir,
            enable_console=enable_console,
            enable_file=enable_file
        )
    return _security_logger


def reset_security_logger() -> None:
    """Reset the global security logger (for testing)"""
    global _security_logger
    _security_logger = None
