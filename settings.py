"""
NewsHarvest settings.

Environment-driven configuration, structured logging and the metrics collector
shared by the extraction engine and the HTTP server.
"""
import os
import sys
import json
import logging
import threading
from collections import defaultdict
from datetime import datetime, timezone
from typing import Dict, List

# =============================================================================
# CONFIGURATION
# =============================================================================

LOG_LEVEL = os.environ.get('NEWSHARVEST_LOG_LEVEL', 'INFO')

# Resolve registry path relative to this file
SOURCES_PATH = os.environ.get(
    'NEWSHARVEST_SOURCES_PATH',
    os.path.join(os.path.dirname(os.path.abspath(__file__)), 'sources.json')
)
DB_PATH = os.environ.get('NEWSHARVEST_DB_PATH', 'newsharvest.db')

# Orchestration
MAX_CONCURRENCY = int(os.environ.get('NEWSHARVEST_MAX_CONCURRENCY', '3'))
BATCH_PAUSE_SECONDS = float(os.environ.get('NEWSHARVEST_BATCH_PAUSE', '2.0'))
TIMEOUT_GRACE_SECONDS = 0.5

# Per-source defaults, overridable in sources.json
DEFAULT_TIMEOUT_SECONDS = float(os.environ.get('NEWSHARVEST_TIMEOUT', '10'))
DEFAULT_MIN_ARTICLES = int(os.environ.get('NEWSHARVEST_MIN_ARTICLES', '2'))
DEFAULT_MAX_ARTICLES = int(os.environ.get('NEWSHARVEST_MAX_ARTICLES', '30'))

# Field bounds
MAX_TITLE_LENGTH = 300
MAX_SUMMARY_LENGTH = 500

# Classification
INVALID_RATIO_THRESHOLD = 0.2

# Store retry policy
STORE_MAX_RETRIES = int(os.environ.get('NEWSHARVEST_STORE_RETRIES', '2'))
STORE_RETRY_BACKOFF = float(os.environ.get('NEWSHARVEST_STORE_BACKOFF', '0.3'))
BREAKER_FAILURE_THRESHOLD = int(os.environ.get('NEWSHARVEST_BREAKER_THRESHOLD', '5'))
BREAKER_RESET_SECONDS = float(os.environ.get('NEWSHARVEST_BREAKER_RESET', '30'))

# Health reporting
REGION_SUCCESS_THRESHOLD = 0.8
ZERO_STREAK_THRESHOLD = 3

USER_AGENT = 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36'

# =============================================================================
# LOGGING SETUP
# =============================================================================

LOGGER_NAME = 'newsharvest'

_EXTRA_FIELDS = ('region', 'source', 'duration_ms', 'article_count', 'error_type')


class StructuredFormatter(logging.Formatter):
    """JSON-structured logging formatter for observability."""

    def format(self, record):
        log_data = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }

        for field in _EXTRA_FIELDS:
            if hasattr(record, field):
                log_data[field] = getattr(record, field)

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data)


def configure_logging(level: str = LOG_LEVEL) -> logging.Logger:
    """Send structured logs to STDERR. Called once by entry points."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(StructuredFormatter())

    root = logging.getLogger(LOGGER_NAME)
    root.handlers = [handler]
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.propagate = False
    return root


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f'{LOGGER_NAME}.{name}')

# =============================================================================
# METRICS COLLECTION
# =============================================================================

class Metrics:
    """Thread-safe metrics collector for observability."""

    def __init__(self):
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = defaultdict(int)
        self._histograms: Dict[str, List[float]] = defaultdict(list)
        self._start_time = datetime.now(timezone.utc)

    def increment(self, name: str, value: int = 1) -> None:
        with self._lock:
            self._counters[name] += value

    def record_duration(self, name: str, duration_ms: float) -> None:
        with self._lock:
            self._histograms[name].append(duration_ms)
            # Keep only last 1000 samples
            if len(self._histograms[name]) > 1000:
                self._histograms[name] = self._histograms[name][-1000:]

    def get_stats(self) -> Dict:
        with self._lock:
            stats = {
                'uptime_seconds': (datetime.now(timezone.utc) - self._start_time).total_seconds(),
                'counters': dict(self._counters),
                'histograms': {}
            }
            for name, values in self._histograms.items():
                if values:
                    sorted_vals = sorted(values)
                    stats['histograms'][name] = {
                        'count': len(values),
                        'min': min(values),
                        'max': max(values),
                        'avg': sum(values) / len(values),
                        'p50': sorted_vals[len(sorted_vals) // 2],
                        'p95': sorted_vals[int(len(sorted_vals) * 0.95)] if len(sorted_vals) > 20 else sorted_vals[-1],
                    }
            return stats
