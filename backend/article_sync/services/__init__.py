"""
Service Layer

Lock store, media rehosting pipeline, origin API client, sync orchestrator
and task queue. Use services.factory to build them from the app config.
"""
from .lock_store import LockStore
from .media import (
    MediaReference,
    ResourceExtractor,
    ResourceDownloader,
    DownloadResult,
    BlobStorage,
    LocalBlobStorage,
    MediaResourcePipeline,
    PipelineResult,
)
from .origin_api import OriginApiClient, ArticlePayload, ListPage
from .repositories import AccountConfigStore, ContentRepository
from .sync_run import SyncRun
from .sync_orchestrator import SyncOrchestrator
from .task_queue import TaskQueue, RetryPolicy, make_content_sync_handler

__all__ = [
    'LockStore',
    'MediaReference',
    'ResourceExtractor',
    'ResourceDownloader',
    'DownloadResult',
    'BlobStorage',
    'LocalBlobStorage',
    'MediaResourcePipeline',
    'PipelineResult',
    'OriginApiClient',
    'ArticlePayload',
    'ListPage',
    'AccountConfigStore',
    'ContentRepository',
    'SyncRun',
    'SyncOrchestrator',
    'TaskQueue',
    'RetryPolicy',
    'make_content_sync_handler',
]
