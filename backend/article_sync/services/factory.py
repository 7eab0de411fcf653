"""
Service wiring

Builds the sync stack from a Flask config mapping. Only the origin API
client is cached; callers build everything else fresh and may swap any
collaborator.
"""
from typing import Mapping, Optional

from .lock_store import LockStore
from .media import (
    BlobStorage,
    LocalBlobStorage,
    MediaResourcePipeline,
    ResourceDownloader,
    ResourceExtractor,
)
from .origin_api import OriginApiClient
from .repositories import AccountConfigStore, ContentRepository
from .sync_orchestrator import SyncOrchestrator
from .task_queue import RetryPolicy, TaskQueue, make_content_sync_handler
from ..models import AsyncTask


def build_storage(config: Mapping) -> LocalBlobStorage:
    return LocalBlobStorage(config['MEDIA_PATH'], config['MEDIA_BASE_URL'])


def build_extractor(config: Mapping) -> ResourceExtractor:
    return ResourceExtractor(config['REMOTE_MEDIA_HOSTS'], local_base_url=config['MEDIA_BASE_URL'])


def build_downloader(config: Mapping, storage: Optional[BlobStorage] = None) -> ResourceDownloader:
    return ResourceDownloader(
        storage or build_storage(config),
        max_concurrency=config['MEDIA_MAX_CONCURRENCY'],
        request_timeout=config['MEDIA_REQUEST_TIMEOUT'],
        fanout_timeout=config['MEDIA_FANOUT_TIMEOUT'],
        max_bytes=config['MEDIA_MAX_BYTES'],
    )


def build_pipeline(config: Mapping, storage: Optional[BlobStorage] = None) -> MediaResourcePipeline:
    return MediaResourcePipeline(build_extractor(config), build_downloader(config, storage))


_origin_clients = {}


def build_origin_client(config: Mapping) -> OriginApiClient:
    """One client per API base so access tokens stay cached between runs"""
    base_url = config['ORIGIN_API_BASE']
    client = _origin_clients.get(base_url)
    if client is None:
        client = OriginApiClient(
            base_url,
            timeout=config['ORIGIN_API_TIMEOUT'],
            page_size=config['ORIGIN_PAGE_SIZE'],
        )
        _origin_clients[base_url] = client
    return client


def build_sync_orchestrator(
    config: Mapping,
    origin_client: Optional[OriginApiClient] = None,
    pipeline: Optional[MediaResourcePipeline] = None,
    lock_store: Optional[LockStore] = None
) -> SyncOrchestrator:
    return SyncOrchestrator(
        lock_store=lock_store or LockStore(),
        origin_client=origin_client or build_origin_client(config),
        accounts=AccountConfigStore(),
        content=ContentRepository(),
        pipeline=pipeline or build_pipeline(config),
        lock_ttl=config['SYNC_LOCK_TTL'],
        max_errors=config['SYNC_MAX_ERRORS'],
    )


def build_task_queue(config: Mapping, orchestrator: Optional[SyncOrchestrator] = None) -> TaskQueue:
    """Task queue with the content_sync handler registered.

    The orchestrator is built lazily, on the first content_sync task, so
    enqueue-only callers never touch the media or origin stack.
    """
    queue = TaskQueue(
        batch_size=config['TASK_BATCH_SIZE'],
        task_timeout=config['TASK_TIMEOUT'],
        retry_policy=RetryPolicy(
            base_delay=config['TASK_RETRY_BASE_DELAY'],
            max_delay=config['TASK_RETRY_MAX_DELAY'],
        ),
    )

    def content_sync(payload):
        handler = make_content_sync_handler(orchestrator or build_sync_orchestrator(config))
        return handler(payload)

    queue.register_handler(AsyncTask.TYPE_CONTENT_SYNC, content_sync)
    return queue
