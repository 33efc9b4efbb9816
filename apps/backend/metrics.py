"""
Lightweight metrics helper for ingestion and cleanup monitoring.
Supports Prometheus if available, falls back to JSON file metrics.
"""
import os
import json
import logging
from pathlib import Path
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

# Try to import Prometheus client
try:
    from prometheus_client import Counter
    PROMETHEUS_AVAILABLE = True
except ImportError:
    PROMETHEUS_AVAILABLE = False
    Counter = None

# Metrics file path (fallback mode)
METRICS_FILE = Path(os.getenv("JOBLINK_METRICS_FILE", "/tmp/joblink_metrics.json"))

METRIC_KEYS = ['inserted', 'updated', 'skipped', 'failed', 'removed', 'invalidated', 'rate_limited']

HISTORY_LIMIT = 1000

# Prometheus counters (if available)
if PROMETHEUS_AVAILABLE:
    _counters = {
        'inserted': Counter('joblink_postings_inserted_total', 'Total scraped postings inserted'),
        'updated': Counter('joblink_postings_updated_total', 'Total scraped postings refreshed'),
        'skipped': Counter('joblink_postings_skipped_total', 'Total scraped postings skipped'),
        'failed': Counter('joblink_source_failures_total', 'Total per-source scrape failures'),
        'removed': Counter('joblink_postings_expired_total', 'Total postings purged as expired'),
        'invalidated': Counter('joblink_postings_invalidated_total', 'Total postings failing re-validation'),
        'rate_limited': Counter('joblink_requests_rate_limited_total', 'Total requests blocked by rate limits'),
    }
else:
    _counters = {}


def _empty_metrics() -> dict:
    data = {key: 0 for key in METRIC_KEYS}
    data['history'] = []
    return data


def _load_json_metrics() -> dict:
    """Load metrics from JSON file."""
    if not METRICS_FILE.exists():
        return _empty_metrics()

    try:
        with open(METRICS_FILE, 'r') as f:
            data = json.load(f)
        for key, default in _empty_metrics().items():
            data.setdefault(key, default)
        return data
    except Exception as e:
        logger.warning(f"Error loading metrics file: {e}, starting fresh")
        return _empty_metrics()


def _save_json_metrics(data: dict):
    """Save metrics to JSON file."""
    try:
        METRICS_FILE.parent.mkdir(parents=True, exist_ok=True)
        with open(METRICS_FILE, 'w') as f:
            json.dump(data, f, indent=2)
    except Exception as e:
        logger.error(f"Error saving metrics file: {e}")


def _add_to_history(data: dict, metric_type: str, count: int):
    """Add a timestamped entry to history (keep last 1000 entries)."""
    data.setdefault('history', []).append({
        'timestamp': datetime.now(timezone.utc).isoformat(),
        'type': metric_type,
        'count': count
    })
    if len(data['history']) > HISTORY_LIMIT:
        data['history'] = data['history'][-HISTORY_LIMIT:]


def _incr(key: str, n: int):
    if n <= 0:
        return

    if PROMETHEUS_AVAILABLE and key in _counters:
        _counters[key].inc(n)
    else:
        data = _load_json_metrics()
        data[key] = data.get(key, 0) + n
        _add_to_history(data, key, n)
        _save_json_metrics(data)


def incr_inserted(n: int = 1):
    """Increment inserted postings counter."""
    _incr('inserted', n)


def incr_updated(n: int = 1):
    """Increment refreshed postings counter."""
    _incr('updated', n)


def incr_skipped(n: int = 1):
    _incr('skipped', n)


def incr_failed(n: int = 1):
    """Increment per-source failure counter."""
    _incr('failed', n)


def incr_removed(n: int = 1):
    _incr('removed', n)


def incr_invalidated(n: int = 1):
    _incr('invalidated', n)


def incr_rate_limited(n: int = 1):
    _incr('rate_limited', n)


def get_metrics() -> dict:
    """Get current metrics."""
    if PROMETHEUS_AVAILABLE:
        return {
            'mode': 'prometheus',
            'note': 'Query the Prometheus endpoint directly for metrics'
        }

    data = _load_json_metrics()
    result = {'mode': 'json'}
    for key in METRIC_KEYS:
        result[key] = data.get(key, 0)
    result['history'] = data.get('history', [])
    return result
