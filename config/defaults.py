"""
Default configuration values for outline-sync.

Centralized defaults that can be overridden by environment variables or config files.
"""

from pathlib import Path
from typing import Dict, Any

from core.models.config import CONFIG_DIR_NAME, default_collection_mapping

DEFAULT_COLLECTION = "Inbox"

DEFAULT_COLLECTION_MAPPING = default_collection_mapping()

# Global default settings
DEFAULT_SETTINGS = {
    # Outline connection
    "outline": {
        "url": "http://localhost:3000",
        "api_key": None,
        "timeout": 30.0
    },

    # Watched files and event coalescing
    "watch": {
        "include_patterns": ["*.md", "*.markdown", "*.mdx"],
        "exclude_dirs": [
            ".git", "node_modules", ".cache", ".DS_Store",
            CONFIG_DIR_NAME, "__pycache__", ".venv", "venv"
        ],
        "debounce_seconds": 2.0,
        "move_window_seconds": 1.0,
        "max_file_size_mb": 50,
        "queue_max_size": 1000
    },

    # Remote call dispatching
    "dispatcher": {
        "max_concurrency": 5,
        "max_attempts": 5,
        "base_delay": 1.0,
        "max_delay": 60.0,
        "jitter": 0.5,
        "rate_limits": {
            "create": 100.0,
            "update": 100.0,
            "delete": 100.0,
            "list": 100.0
        },
        "breaker_failure_ratio": 0.5,
        "breaker_window_seconds": 60.0,
        "breaker_min_calls": 5,
        "breaker_cooldown_seconds": 30.0,
        "conflict_reevaluations": 2
    },

    # Periodic full-tree pass
    "reconciler": {
        "enabled": True,
        "interval_minutes": 360.0,
        "initial_delay_minutes": 1.0,
        "concurrency": 5,
        "timeout_minutes": 60.0
    },

    # Sync defaults
    "sync": {
        "default_collection": DEFAULT_COLLECTION,
        "merge_policy": "remote-wins",
        "lease_seconds": 300.0,
        "worker_count": 4
    },

    # Global directories
    "directories": {
        "global_config_dir": str(Path.home() / ".outline-sync")
    },

    # Logging
    "logging": {
        "level": "INFO",
        "log_to_file": False
    }
}

# Environment variable mappings
ENV_VAR_MAPPING = {
    'OUTLINE_URL': 'outline.url',
    'OUTLINE_API_KEY': 'outline.api_key',
    'API_TIMEOUT_SECONDS': 'outline.timeout',
    'EVENT_DEBOUNCE_SECONDS': 'watch.debounce_seconds',
    'MAX_FILE_SIZE_MB': 'watch.max_file_size_mb',
    'QUEUE_MAX_SIZE': 'watch.queue_max_size',
    'BATCH_SIZE': 'reconciler.concurrency',
    'RETRY_ATTEMPTS': 'dispatcher.max_attempts',
    'OUTLINE_REQUESTS_PER_MINUTE': 'dispatcher.rate_limits.*',
    'ERROR_RATE_THRESHOLD': 'dispatcher.breaker_failure_ratio',
    'BATCH_INTERVAL_MINUTES': 'reconciler.interval_minutes',
    'DEFAULT_COLLECTION': 'default_collection',
    'MERGE_POLICY': 'merge_policy',
    'OUTLINE_SYNC_STATE_DIR': 'state_dir',
}


def get_default_sync_config() -> Dict[str, Any]:
    """Get default sync configuration template"""
    return {
        'root': '${root}',
        'default_collection': DEFAULT_SETTINGS['sync']['default_collection'],
        'collection_mapping': dict(DEFAULT_COLLECTION_MAPPING),
        'merge_policy': DEFAULT_SETTINGS['sync']['merge_policy'],
        'lease_seconds': DEFAULT_SETTINGS['sync']['lease_seconds'],
        'worker_count': DEFAULT_SETTINGS['sync']['worker_count'],
        'outline': dict(DEFAULT_SETTINGS['outline']),
        'watch': {
            **DEFAULT_SETTINGS['watch'],
            'include_patterns': list(DEFAULT_SETTINGS['watch']['include_patterns']),
            'exclude_dirs': list(DEFAULT_SETTINGS['watch']['exclude_dirs']),
        },
        'dispatcher': {
            **DEFAULT_SETTINGS['dispatcher'],
            'rate_limits': dict(DEFAULT_SETTINGS['dispatcher']['rate_limits']),
        },
        'reconciler': dict(DEFAULT_SETTINGS['reconciler']),
    }
