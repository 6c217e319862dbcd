"""
Configuration settings for the gradebook app.

These values can be overridden in Django settings by prefixing with GRADEBOOK_.
For example, to fan class reports out over four threads:
    GRADEBOOK_REPORT_MAX_WORKERS = 4

All configuration values are lazily loaded to avoid Django setup issues.
"""


def _get_setting(name, default):
    """Get a gradebook setting from Django settings or use default."""
    from django.conf import settings
    return getattr(settings, f'GRADEBOOK_{name}', default)


_DEFAULTS = {
    # Averages are rounded half-up to this many places
    'AVERAGE_DECIMAL_PLACES': 2,

    # Batch report runs
    'REPORT_MAX_WORKERS': 1,
    'REPORT_DEADLINE_SECONDS': None,

    # Cross-request cache (off by default, see gradebook.cache)
    'SHARED_REPORT_CACHE': False,
    'SHARED_REPORT_CACHE_TIMEOUT': 300,  # seconds

    # API rate limiting
    'REPORT_RATE_LIMIT': '120/h',

    # Celery task settings
    'TASK_MAX_RETRIES': 3,
    'TASK_RETRY_DELAY': 60,  # seconds
    'TASK_SOFT_TIME_LIMIT': 5 * 60,
    'TASK_TIME_LIMIT': 6 * 60,
}


class _ConfigProxy:
    """
    Lazy configuration proxy that loads settings only when accessed.
    This avoids Django setup issues during module import.
    """

    def __getattr__(self, name):
        if name in _DEFAULTS:
            return _get_setting(name, _DEFAULTS[name])
        raise AttributeError(f"Unknown config setting: {name}")


_config = _ConfigProxy()


def __getattr__(name):
    """Enable module-level attribute access via the config proxy."""
    return getattr(_config, name)
