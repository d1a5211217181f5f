"""
STATCUBE Core Components

This module provides functionality shared across the engine:
- Engine connections
- Configuration management
- Logging and build logs
- Storage access
- Errors, translations and data models
"""

from .database import DatabaseManager
from .config import Config
from .logger import Logger
from .storage import FileSystemStorage, Storage
from .i18n import CatalogTranslator, Translator
from .errors import StatCubeError

__all__ = [
    'DatabaseManager',
    'Config',
    'Logger',
    'FileSystemStorage',
    'Storage',
    'CatalogTranslator',
    'Translator',
    'StatCubeError'
]
