# aios/integrations/__init__.py
"""AIOS External Integrations"""

from .completion_client import CompletionClient, CompletionClientError, CompletionConfig
from .redis_events import RedisEventPublisher

__all__ = [
    "CompletionClient",
    "CompletionClientError",
    "CompletionConfig",
    "RedisEventPublisher",
]
