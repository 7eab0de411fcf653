"""
Media rehosting: extraction, download, storage and rewriting
"""
from .extractor import MediaReference, ResourceExtractor
from .session_pool import RequestSessionPool, get_request_session_pool
from .downloader import DownloadResult, ResourceDownloader
from .storage import BlobStorage, LocalBlobStorage
from .pipeline import MediaResourcePipeline, PipelineResult

__all__ = [
    'MediaReference',
    'ResourceExtractor',
    'RequestSessionPool',
    'get_request_session_pool',
    'DownloadResult',
    'ResourceDownloader',
    'BlobStorage',
    'LocalBlobStorage',
    'MediaResourcePipeline',
    'PipelineResult',
]
