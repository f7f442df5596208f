"""
Settings for the play client and the collector.

Values come from the built-in defaults, then an optional YAML file, then
environment variables.
"""
import logging
import os

import yaml

logger = logging.getLogger(__name__)

BASE_DIR = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
DATA_DIR = os.environ.get('WORLDCUP_DATA_DIR', os.path.join(BASE_DIR, 'data'))
SETTINGS_FILE = os.path.join(DATA_DIR, 'settings.yaml')

ENV_OVERRIDES = {
    'WORLDCUP_API_BASE': ('api_base_url', str),
    'WORLDCUP_HTTP_TIMEOUT': ('http_timeout_seconds', float),
    'WORLDCUP_BEACON_TIMEOUT': ('beacon_timeout_seconds', float),
    'WORLDCUP_FLUSH_TIMEOUT': ('flush_timeout_seconds', float),
    'WORLDCUP_DECISION_DELAY': ('decision_delay_seconds', float),
    'WORLDCUP_DEFAULT_SIZE': ('default_size', int),
}


def get_default_settings():
    """Return default settings."""
    return {
        'api_base_url': 'http://localhost:5000',
        'http_timeout_seconds': 5.0,
        'beacon_timeout_seconds': 2.0,
        'beacon_max_bytes': 64 * 1024,
        'decision_delay_seconds': 0.0,
        'show_vote_stats': True,
        'default_size': 16,
        'max_bulk_votes': 100,
        'flush_timeout_seconds': 10.0,
        'vote_queue_capacity': 1024,
        'results_path': '/tournament-result',
    }


def load_settings(path=None, environ=None):
    """Load settings, layering the YAML file and environment over the defaults."""
    environ = os.environ if environ is None else environ
    settings = get_default_settings()

    path = path or environ.get('WORLDCUP_CONFIG') or SETTINGS_FILE
    if os.path.exists(path):
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f)
            if data:
                settings.update(data)
        except yaml.YAMLError as e:
            logger.warning(f'Failed to parse {path}: {e}')

    for env_name, (key, cast) in ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value is None or value == '':
            continue
        try:
            settings[key] = cast(value)
        except ValueError:
            logger.warning(f'Ignoring invalid {env_name}={value!r}')

    return settings
