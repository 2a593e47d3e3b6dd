"""Typed failures raised by registry connectors."""


class ConnectorError(Exception):
    """Base class for connector failures"""

    def __init__(self, source_id: str, message: str):
        super().__init__(f"[{source_id}] {message}")
        self.source_id = source_id
        self.reason = message


class SourceUnavailable(ConnectorError):
    """Transport error, timeout, rate limiting or non-2xx answer (transient)"""
    pass


class RecordNotFound(ConnectorError):
    """The source answered and holds no record for the key (valid negative)"""
    pass


class InvalidIdentifier(ConnectorError):
    """The identifier failed local format/check-digit validation"""

    def __init__(self, source_id: str, scheme: str, message: str):
        super().__init__(source_id, message)
        self.scheme = scheme
