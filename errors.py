"""Error taxonomy for the harvesting pipeline."""


class HarvestError(Exception):
    """Base class for pipeline errors."""
    error_type = 'error'


class ConfigError(HarvestError):
    """Malformed source descriptor. Fatal at registry load."""
    error_type = 'config'

    def __init__(self, message: str, source: str = None, region: str = None):
        self.source = source
        self.region = region
        if source:
            where = f"{region}/{source}" if region else source
            message = f"{where}: {message}"
        super().__init__(message)


class NetworkError(HarvestError):
    """Connection failure, non-2xx response, timeout or refused URL."""
    error_type = 'network'

    def __init__(self, message: str, status_code: int = None, reason: str = 'request_error'):
        self.status_code = status_code
        self.reason = reason
        super().__init__(message)


class StructuralMismatch(HarvestError):
    """Container selectors matched nothing on the listing page."""
    error_type = 'structural'


class ValidationError(HarvestError):
    """A candidate failed normalization."""
    error_type = 'validation'


class StoreUnavailable(HarvestError):
    """The article store failed after retries, or its breaker is open."""
    error_type = 'store'
