"""
Database models
"""
from .lock import DistributedLock
from .source_account import SourceAccount
from .content_item import ContentItem
from .async_task import AsyncTask

__all__ = ['DistributedLock', 'SourceAccount', 'ContentItem', 'AsyncTask']
