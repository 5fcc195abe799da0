"""Configuration module for docwatch.

Provides configuration management for database, crawling, embeddings, answers
and the source-sync worker.
"""

from .database import (
    DatabaseConfig,
    DatabaseType,
    DatabaseFactory,
    db_factory,
    initialize_database,
    close_database
)
from .settings import (
    AnswerSettings,
    CrawlSettings,
    EmbeddingSettings,
    EmbeddingsProvider,
    NotificationSettings,
    Settings,
    WorkerSettings
)

__all__ = [
    'DatabaseConfig',
    'DatabaseType',
    'DatabaseFactory',
    'db_factory',
    'initialize_database',
    'close_database',
    'AnswerSettings',
    'CrawlSettings',
    'EmbeddingSettings',
    'EmbeddingsProvider',
    'NotificationSettings',
    'Settings',
    'WorkerSettings'
]
