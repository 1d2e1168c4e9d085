# chain_scanner/errors.py


class ChainScannerError(Exception):
    """Base class for every error raised by chain_scanner."""


class SourceUnavailable(ChainScannerError):
    """A dependency source adapter failed while being read."""

    def __init__(self, source_name: str, cause: Exception | None = None):
        self.source_name = source_name
        self.cause = cause
        message = f"Dependency source '{source_name}' is unavailable"
        if cause is not None:
            message += f": {cause}"
        super().__init__(message)


class TransportFailure(ChainScannerError):
    """Network error, timeout, non-200 status or malformed body from the vulnerability database."""

    def __init__(self, url: str, reason: str, status_code: int | None = None):
        self.url = url
        self.reason = reason
        self.status_code = status_code
        status = f" (HTTP {status_code})" if status_code is not None else ""
        super().__init__(f"Request to {url} failed{status}: {reason}")


class OrchestrationFailure(ChainScannerError):
    """The scan as a whole could not run. Distinct from 'no vulnerabilities found'."""


class ScanAlreadyRunning(OrchestrationFailure):
    def __init__(self):
        super().__init__("A scan is already in progress for this orchestrator")


class ScrapeFailure(ChainScannerError):
    """The best-effort fixed-version page lookup failed. Never surfaced to callers."""


class ConfigError(ChainScannerError):
    """Invalid configuration value or unreadable config file."""
