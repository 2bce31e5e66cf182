"""Configuration loader for crawl policy settings."""

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_CONFIG = {
    'user_agent': 'UniversalIDE-Crawler/1.0',
    'robots_cache': {
        'ttl_hours': 24,
        'max_entries': 1000
    },
    'crawl_settings': {
        'max_depth': 3,
        'max_pages': 150,
        'rate_limit_ms': 750,
        'timeout': 15,
        'retry_attempts': 3,
        'max_concurrency': 4,
        'default_crawl_delay': 0.0,
        'max_crawl_delay': 30.0,
        'respect_crawl_delay': True,
        'robots_timeout': 10
    },
    'content': {
        'max_content_bytes': 2 * 1024 * 1024,
        'min_content_chars': 100,
        'supported_content_types': [
            'text/html',
            'text/plain',
            'text/markdown',
            'application/xhtml+xml'
        ]
    },
    'url_patterns': {
        'blacklist': [],
        'non_documentation': [
            r'/blog(/|$)',
            r'/pricing(/|$)',
            r'/changelog(/|$)',
            r'/news(/|$)',
            r'/press(/|$)',
            r'/legal(/|$)',
            r'/terms(/|$)',
            r'/privacy(/|$)',
            r'\.(png|jpe?g|gif|svg|webp|ico)$'
        ],
        'blocked_extensions': [
            '.png', '.jpg', '.jpeg', '.gif', '.svg', '.webp', '.ico', '.bmp',
            '.pdf', '.zip', '.tar', '.gz', '.tgz', '.rar', '.7z',
            '.mp3', '.mp4', '.mov', '.avi', '.webm', '.wav',
            '.exe', '.dmg', '.msi', '.deb', '.rpm', '.bin',
            '.woff', '.woff2', '.ttf', '.eot', '.css', '.js'
        ]
    }
}


class PolicyConfig:
    """Crawl policy configuration manager."""

    def __init__(self, config_path: str = None):
        self.config_path = config_path or self._get_default_config_path()
        self._config = self._load_config()

    def _get_default_config_path(self) -> str:
        """Get the default configuration file path."""
        # Look for config file in multiple locations
        possible_paths = [
            os.environ.get('IDEDOCS_POLICY_CONFIG'),
            os.path.join(os.getcwd(), 'config', 'policy_config.yaml'),
            os.path.join(Path(__file__).parent, 'policy_config.yaml'),
            os.path.join(os.path.expanduser('~'), '.idedocs', 'policy_config.yaml')
        ]

        for path in possible_paths:
            if path and os.path.exists(path):
                return path

        # Return the expected path even if it doesn't exist
        return os.path.join(Path(__file__).parent, 'policy_config.yaml')

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from file or use defaults."""
        config = copy.deepcopy(DEFAULT_CONFIG)

        if os.path.exists(self.config_path):
            try:
                with open(self.config_path, 'r', encoding='utf-8') as f:
                    file_config = yaml.safe_load(f) or {}

                config = self._deep_merge(config, file_config)

            except (OSError, yaml.YAMLError) as e:
                logger.warning(f"Failed to load policy config from {self.config_path}: {e}; using defaults")
        else:
            logger.debug(f"Policy config file not found at {self.config_path}, using defaults")

        return config

    def _deep_merge(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two dictionaries."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value by dotted key."""
        keys = key.split('.')
        value = self._config

        for k in keys:
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default

        return value

    def get_user_agent(self) -> str:
        return self.get('user_agent', DEFAULT_CONFIG['user_agent'])

    def get_crawl_settings(self) -> Dict[str, Any]:
        return dict(self.get('crawl_settings', {}))

    def get_crawl_delay_settings(self) -> Dict[str, float]:
        """Get robots crawl-delay handling."""
        return {
            'default': float(self.get('crawl_settings.default_crawl_delay', 0.0)),
            'max': float(self.get('crawl_settings.max_crawl_delay', 30.0)),
            'respect': bool(self.get('crawl_settings.respect_crawl_delay', True))
        }

    def get_robots_timeout(self) -> float:
        return float(self.get('crawl_settings.robots_timeout', 10))

    def get_cache_settings(self) -> Dict[str, int]:
        return {
            'ttl_hours': self.get('robots_cache.ttl_hours', 24),
            'max_entries': self.get('robots_cache.max_entries', 1000)
        }

    def get_url_blacklist(self) -> List[str]:
        return list(self.get('url_patterns.blacklist', []))

    def get_non_documentation_patterns(self) -> List[str]:
        return list(self.get('url_patterns.non_documentation', []))

    def get_blocked_extensions(self) -> List[str]:
        return [ext.lower() for ext in self.get('url_patterns.blocked_extensions', [])]

    def get_supported_content_types(self) -> List[str]:
        return list(self.get('content.supported_content_types', []))

    def get_content_limits(self) -> Dict[str, int]:
        return {
            'max_bytes': int(self.get('content.max_content_bytes', 2 * 1024 * 1024)),
            'min_chars': int(self.get('content.min_content_chars', 100))
        }

    def reload(self):
        """Reload configuration from file."""
        self._config = self._load_config()


# Global configuration instance
policy_config = PolicyConfig()


def get_policy_config(config_path: Optional[str] = None) -> PolicyConfig:
    """Return the global policy config, or a fresh one for an explicit path."""
    if config_path:
        return PolicyConfig(config_path)
    return policy_config
