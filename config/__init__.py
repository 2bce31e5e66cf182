"""Configuration module for idedocs.

Provides runtime settings, crawl policy and chunk store configuration.
"""

from .database import StoreConfig, StoreType, create_store
from .policy_loader import PolicyConfig, get_policy_config, policy_config
from .settings import EmbeddingBackend, ProviderName, Settings, get_settings

__all__ = [
    'StoreConfig',
    'StoreType',
    'create_store',
    'PolicyConfig',
    'get_policy_config',
    'policy_config',
    'EmbeddingBackend',
    'ProviderName',
    'Settings',
    'get_settings'
]
