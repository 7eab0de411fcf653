"""
Resource Downloader - bounded-parallel media fetcher

Each distinct URL is fetched once through a fixed-size thread pool, stored
through the blob storage and reported independently: one failing URL never
aborts its siblings. Timeouts, 4xx/5xx and unsupported payloads all end up
as a failed DownloadResult with the cause kept. Nothing is retried here.

When the fan-out deadline passes, unfinished downloads are reported as
failed and flagged abandoned. A worker already inside its request keeps
running until the request timeout, but it checks the flag before storing
and drops the bytes instead of writing an orphaned blob.
"""
import mimetypes
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FuturesTimeoutError
from typing import Dict, Iterable, Optional, Tuple
from urllib.parse import parse_qs, urlparse

import requests

from ...errors import DownloadError
from ...utils.logger import get_logger
from .session_pool import RequestSessionPool, get_request_session_pool
from .storage import BlobStorage

logger = get_logger('downloader')

MEDIA_TYPE_PREFIXES = ('image/', 'video/', 'audio/')

# Content types that say nothing about the payload; fall back to the URL
GENERIC_CONTENT_TYPES = ('', 'application/octet-stream', 'binary/octet-stream')

# WeChat image URLs carry the real format in ?wx_fmt=
WX_FMT_TYPES = {
    'jpg': 'image/jpeg',
    'jpeg': 'image/jpeg',
    'png': 'image/png',
    'gif': 'image/gif',
    'webp': 'image/webp',
    'bmp': 'image/bmp',
    'svg': 'image/svg+xml',
}

CHUNK_SIZE = 8192


def detect_mime_type(url: str, content_type: Optional[str]) -> Optional[str]:
    """MIME type of a media response, or None if it is not image/video/audio"""
    mime = (content_type or '').split(';')[0].strip().lower()
    if mime.startswith(MEDIA_TYPE_PREFIXES):
        return mime
    if mime not in GENERIC_CONTENT_TYPES:
        return None

    parsed = urlparse(url)
    wx_fmt = parse_qs(parsed.query).get('wx_fmt')
    if wx_fmt and wx_fmt[0].lower() in WX_FMT_TYPES:
        return WX_FMT_TYPES[wx_fmt[0].lower()]

    guessed, _ = mimetypes.guess_type(parsed.path)
    if guessed and guessed.startswith(MEDIA_TYPE_PREFIXES):
        return guessed
    return None


class DownloadResult:
    """Outcome of one URL"""

    def __init__(self, url: str, resolved_url: Optional[str] = None, mime_type: Optional[str] = None,
                 byte_size: Optional[int] = None, error: Optional[str] = None,
                 cause: Optional[BaseException] = None):
        self.url = url
        self.resolved_url = resolved_url
        self.mime_type = mime_type
        self.byte_size = byte_size
        self.error = error
        self.cause = cause

    @property
    def ok(self) -> bool:
        return self.error is None and self.resolved_url is not None

    @classmethod
    def failure(cls, url: str, error: DownloadError) -> 'DownloadResult':
        return cls(url, error=str(error), cause=error.cause or error)

    def __repr__(self):
        state = self.resolved_url if self.ok else f'error={self.error}'
        return f'<DownloadResult {self.url} {state}>'


class ResourceDownloader:
    """Fetch many URLs with bounded concurrency and rehost them.

    Example:
        >>> downloader = ResourceDownloader(LocalBlobStorage(path), max_concurrency=5)
        >>> results = downloader.download_many(urls)
        >>> {url: r.resolved_url for url, r in results.items() if r.ok}
    """

    def __init__(
        self,
        storage: BlobStorage,
        session_pool: Optional[RequestSessionPool] = None,
        max_concurrency: int = 5,
        request_timeout: float = 15,
        fanout_timeout: Optional[float] = 60,
        max_bytes: int = 20 * 1024 * 1024
    ):
        """
        Args:
            storage: Where downloaded bytes are saved
            session_pool: Pooled HTTP session; defaults to the shared pool
            max_concurrency: Worker threads per fan-out
            request_timeout: Connect/read timeout per request (seconds)
            fanout_timeout: Deadline for a whole download_many call; None waits forever
            max_bytes: Larger bodies are rejected
        """
        self.storage = storage
        self._session_pool = session_pool
        self.max_concurrency = max_concurrency
        self.request_timeout = request_timeout
        self.fanout_timeout = fanout_timeout
        self.max_bytes = max_bytes

    @property
    def session_pool(self) -> RequestSessionPool:
        if self._session_pool is None:
            self._session_pool = get_request_session_pool()
        return self._session_pool

    def download_many(
        self,
        urls: Iterable[str],
        max_concurrency: Optional[int] = None,
        request_timeout: Optional[float] = None
    ) -> Dict[str, DownloadResult]:
        """Download every distinct URL; the result has one entry per URL"""
        distinct = list(dict.fromkeys(url for url in urls if url))
        if not distinct:
            return {}

        timeout = request_timeout or self.request_timeout
        workers = max(1, min(max_concurrency or self.max_concurrency, len(distinct)))
        results: Dict[str, DownloadResult] = {}

        abandoned = threading.Event()
        executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix='media_dl')
        futures = {executor.submit(self.download, url, timeout, abandoned): url for url in distinct}
        try:
            for future in as_completed(futures, timeout=self.fanout_timeout):
                results[futures[future]] = future.result()
        except FuturesTimeoutError:
            abandoned.set()
            logger.warning(
                f"[ResourceDownloader] Fan-out deadline of {self.fanout_timeout}s hit, "
                f"{len(distinct) - len(results)} downloads abandoned"
            )
            for url in distinct:
                if url not in results:
                    results[url] = DownloadResult.failure(
                        url, DownloadError(url, f'Download did not finish within {self.fanout_timeout}s')
                    )
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        failed = sum(1 for r in results.values() if not r.ok)
        logger.info(f"[ResourceDownloader] {len(distinct) - failed}/{len(distinct)} downloads succeeded")
        return results

    def download(self, url: str, timeout: Optional[float] = None,
                 abandoned: Optional[threading.Event] = None) -> DownloadResult:
        """Fetch and store one URL; never raises.

        If ``abandoned`` is set by the time the body has arrived, nothing is
        stored: the caller already reported this URL as failed.
        """
        try:
            data, mime_type = self.fetch(url, timeout or self.request_timeout)
            if abandoned is not None and abandoned.is_set():
                raise DownloadError(url, 'Download abandoned after the fan-out deadline')
            try:
                resolved_url = self.storage.save(data, mime_type)
            except OSError as e:
                raise DownloadError(url, 'Could not store media', e) from e
        except DownloadError as e:
            logger.warning(f"[ResourceDownloader] {e}: {e.cause!r}" if e.cause else f"[ResourceDownloader] {e}")
            return DownloadResult.failure(url, e)
        except Exception as e:
            logger.exception(f"[ResourceDownloader] Unexpected error downloading {url}")
            return DownloadResult.failure(url, DownloadError(url, 'Unexpected download error', e))

        return DownloadResult(url, resolved_url=resolved_url, mime_type=mime_type, byte_size=len(data))

    def fetch(self, url: str, timeout: float) -> Tuple[bytes, str]:
        """GET ``url`` and return (body, mime_type).

        Raises:
            DownloadError: for timeouts, transport errors, HTTP errors,
                non-media payloads and oversized or empty bodies
        """
        try:
            response = self.session_pool.get(url, stream=True, timeout=timeout)
        except requests.Timeout as e:
            raise DownloadError(url, 'Download timed out', e) from e
        except requests.RequestException as e:
            raise DownloadError(url, 'Download failed', e) from e

        try:
            try:
                response.raise_for_status()
            except requests.HTTPError as e:
                raise DownloadError(url, f'Download failed with HTTP {response.status_code}', e) from e

            mime_type = detect_mime_type(url, response.headers.get('Content-Type'))
            if not mime_type:
                raise DownloadError(url, f"Unsupported content type {response.headers.get('Content-Type')!r}")

            declared = response.headers.get('Content-Length')
            if declared and declared.isdigit() and int(declared) > self.max_bytes:
                raise DownloadError(url, f'Media too large ({declared} bytes)')

            chunks = []
            size = 0
            try:
                for chunk in response.iter_content(CHUNK_SIZE):
                    if not chunk:
                        continue
                    size += len(chunk)
                    if size > self.max_bytes:
                        raise DownloadError(url, f'Media exceeds {self.max_bytes} bytes')
                    chunks.append(chunk)
            except requests.RequestException as e:
                raise DownloadError(url, 'Download interrupted', e) from e
        finally:
            response.close()

        if not size:
            raise DownloadError(url, 'Empty response body')
        return b''.join(chunks), mime_type
