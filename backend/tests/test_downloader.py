"""
Resource Downloader Tests

The session pool is replaced by an in-process fake; no network access.
"""
import hashlib
import io
import os
import threading
import time
from unittest.mock import patch

import pytest
import requests
from requests.structures import CaseInsensitiveDict

from article_sync.services.media import LocalBlobStorage, ResourceDownloader
from article_sync.services.media.downloader import detect_mime_type
from article_sync.services.media.storage import extension_for


def make_response(status=200, body=b'\x89PNG-data', content_type='image/png', url=''):
    response = requests.Response()
    response.status_code = status
    response.url = url
    response.headers = CaseInsensitiveDict({'Content-Type': content_type} if content_type else {})
    response.raw = io.BytesIO(body)
    return response


class FakeSessionPool:
    """Maps URL -> response or exception; records every request"""

    def __init__(self, routes=None, delay=0.0):
        self.routes = routes or {}
        self.delay = delay
        self.requested = []
        self.active = 0
        self.peak = 0
        self._lock = threading.Lock()

    def get(self, url, **kwargs):
        with self._lock:
            self.requested.append(url)
            self.active += 1
            self.peak = max(self.peak, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            route = self.routes.get(url)
            if callable(route):
                route = route()
            if isinstance(route, Exception):
                raise route
            return route if route is not None else make_response()
        finally:
            with self._lock:
                self.active -= 1


def make_downloader(tmp_path, pool, **kwargs):
    return ResourceDownloader(LocalBlobStorage(str(tmp_path), '/api/media'), session_pool=pool, **kwargs)


class TestDownloadMany:
    """Tests for ResourceDownloader.download_many."""

    def test_success_is_stored_content_addressed(self, tmp_path):
        url = 'https://mmbiz.qpic.cn/a.png'
        body = b'png-bytes'
        downloader = make_downloader(tmp_path, FakeSessionPool({url: make_response(body=body)}))

        result = downloader.download_many([url])[url]

        digest = hashlib.sha256(body).hexdigest()
        assert result.ok
        assert result.resolved_url == f'/api/media/{digest}.png'
        assert result.mime_type == 'image/png'
        assert result.byte_size == len(body)
        assert (tmp_path / f'{digest}.png').read_bytes() == body

    def test_failure_does_not_abort_siblings(self, tmp_path):
        good = 'https://mmbiz.qpic.cn/good.png'
        bad = 'https://mmbiz.qpic.cn/missing.png'
        pool = FakeSessionPool({bad: make_response(status=404, content_type='text/html')})

        results = make_downloader(tmp_path, pool).download_many([good, bad])

        assert results[good].ok
        assert not results[bad].ok
        assert 'HTTP 404' in results[bad].error
        assert isinstance(results[bad].cause, requests.HTTPError)

    def test_timeout_is_a_failed_result(self, tmp_path):
        url = 'https://mmbiz.qpic.cn/slow.png'
        pool = FakeSessionPool({url: requests.Timeout('read timed out')})

        result = make_downloader(tmp_path, pool).download_many([url])[url]

        assert not result.ok
        assert 'timed out' in result.error
        assert isinstance(result.cause, requests.Timeout)

    def test_connection_error_is_a_failed_result(self, tmp_path):
        url = 'https://mmbiz.qpic.cn/a.png'
        pool = FakeSessionPool({url: requests.ConnectionError('refused')})

        result = make_downloader(tmp_path, pool).download_many([url])[url]

        assert not result.ok
        assert result.error == f'Download failed ({url})'

    def test_html_payload_is_rejected(self, tmp_path):
        url = 'https://mmbiz.qpic.cn/login'
        pool = FakeSessionPool({url: make_response(body=b'<html>', content_type='text/html; charset=utf-8')})

        result = make_downloader(tmp_path, pool).download_many([url])[url]

        assert not result.ok
        assert 'Unsupported content type' in result.error

    def test_octet_stream_uses_wx_fmt(self, tmp_path):
        url = 'https://mmbiz.qpic.cn/mmbiz_png/abc/640?wx_fmt=png&tp=webp'
        pool = FakeSessionPool({url: make_response(content_type='application/octet-stream')})

        result = make_downloader(tmp_path, pool).download_many([url])[url]

        assert result.ok
        assert result.mime_type == 'image/png'
        assert result.resolved_url.endswith('.png')

    def test_oversized_body_is_rejected(self, tmp_path):
        url = 'https://mmbiz.qpic.cn/huge.png'
        pool = FakeSessionPool({url: make_response(body=b'x' * 2048)})

        result = make_downloader(tmp_path, pool, max_bytes=1024).download_many([url])[url]

        assert not result.ok
        assert 'exceeds 1024 bytes' in result.error
        assert list(tmp_path.iterdir()) == []

    def test_declared_length_over_limit_is_rejected(self, tmp_path):
        url = 'https://mmbiz.qpic.cn/huge.png'
        response = make_response(body=b'x')
        response.headers['Content-Length'] = '999999'
        pool = FakeSessionPool({url: response})

        result = make_downloader(tmp_path, pool, max_bytes=1024).download_many([url])[url]

        assert 'too large' in result.error

    def test_empty_body_is_rejected(self, tmp_path):
        url = 'https://mmbiz.qpic.cn/empty.png'
        pool = FakeSessionPool({url: make_response(body=b'')})

        result = make_downloader(tmp_path, pool).download_many([url])[url]

        assert result.error == f'Empty response body ({url})'

    def test_duplicate_urls_are_fetched_once(self, tmp_path):
        url = 'https://mmbiz.qpic.cn/a.png'
        pool = FakeSessionPool()

        results = make_downloader(tmp_path, pool).download_many([url, url, url])

        assert list(results) == [url]
        assert pool.requested == [url]

    def test_empty_input(self, tmp_path):
        pool = FakeSessionPool()

        assert make_downloader(tmp_path, pool).download_many([]) == {}
        assert pool.requested == []

    def test_concurrency_is_bounded(self, tmp_path):
        urls = [f'https://mmbiz.qpic.cn/{i}.png' for i in range(8)]
        pool = FakeSessionPool({url: make_response(body=url.encode()) for url in urls}, delay=0.05)

        results = make_downloader(tmp_path, pool, max_concurrency=2).download_many(urls)

        assert all(result.ok for result in results.values())
        assert 1 <= pool.peak <= 2

    def test_per_call_concurrency_override(self, tmp_path):
        urls = [f'https://mmbiz.qpic.cn/{i}.png' for i in range(4)]
        pool = FakeSessionPool({url: make_response(body=url.encode()) for url in urls}, delay=0.05)

        make_downloader(tmp_path, pool, max_concurrency=4).download_many(urls, max_concurrency=1)

        assert pool.peak == 1

    def test_fanout_deadline_fails_unfinished_downloads(self, tmp_path):
        fast = 'https://mmbiz.qpic.cn/fast.png'
        stuck = 'https://mmbiz.qpic.cn/stuck.png'
        release = threading.Event()

        def hang():
            release.wait(5)
            return make_response()

        pool = FakeSessionPool({stuck: hang})
        downloader = make_downloader(tmp_path, pool, max_concurrency=2, fanout_timeout=0.3)

        started = time.monotonic()
        try:
            results = downloader.download_many([fast, stuck])
        finally:
            release.set()

        assert time.monotonic() - started < 4
        assert results[fast].ok
        assert not results[stuck].ok
        assert 'did not finish' in results[stuck].error

    def test_abandoned_download_is_not_stored(self, tmp_path):
        """A download that finishes after the deadline does not write a blob."""
        fast = 'https://mmbiz.qpic.cn/fast.png'
        late = 'https://mmbiz.qpic.cn/late.png'
        release = threading.Event()
        finished = threading.Event()

        def arrive_late():
            release.wait(5)
            return make_response(body=b'late-bytes')

        class RecordingStorage(LocalBlobStorage):
            def save(self, data, mime_type):
                try:
                    return super().save(data, mime_type)
                finally:
                    if data == b'late-bytes':
                        finished.set()

        pool = FakeSessionPool({fast: make_response(body=b'fast-bytes'), late: arrive_late})
        downloader = ResourceDownloader(RecordingStorage(str(tmp_path)), session_pool=pool,
                                        max_concurrency=2, fanout_timeout=0.3)

        results = downloader.download_many([fast, late])
        release.set()
        # Let the abandoned worker run to completion
        for thread in threading.enumerate():
            if thread.name.startswith('media_dl'):
                thread.join(timeout=5)

        assert results[fast].ok
        assert not results[late].ok
        assert not finished.is_set()
        assert [path.name for path in tmp_path.iterdir()] == [results[fast].resolved_url.rsplit('/', 1)[1]]

    def test_storage_failure_is_a_failed_result(self, tmp_path):
        url = 'https://mmbiz.qpic.cn/a.png'

        class BrokenStorage(LocalBlobStorage):
            def save(self, data, mime_type):
                raise OSError('disk full')

        downloader = ResourceDownloader(BrokenStorage(str(tmp_path)), session_pool=FakeSessionPool())
        result = downloader.download_many([url])[url]

        assert not result.ok
        assert 'Could not store media' in result.error


class TestDetectMimeType:
    """Tests for detect_mime_type."""

    def test_explicit_media_type_wins(self):
        assert detect_mime_type('https://h/a.png', 'image/jpeg; charset=binary') == 'image/jpeg'
        assert detect_mime_type('https://h/clip', 'video/mp4') == 'video/mp4'

    def test_non_media_type_is_rejected_even_with_media_extension(self):
        assert detect_mime_type('https://h/a.png', 'text/html') is None

    def test_generic_type_falls_back_to_wx_fmt_then_extension(self):
        assert detect_mime_type('https://h/a?wx_fmt=gif', 'application/octet-stream') == 'image/gif'
        assert detect_mime_type('https://h/a.jpg', None) == 'image/jpeg'
        assert detect_mime_type('https://h/a', '') is None


class TestLocalBlobStorage:
    """Tests for LocalBlobStorage."""

    def test_same_bytes_same_url(self, tmp_path):
        storage = LocalBlobStorage(str(tmp_path), '/api/media/')

        first = storage.save(b'abc', 'image/png')
        second = storage.save(b'abc', 'image/png')

        assert first == second
        assert first.startswith('/api/media/')
        assert len(list(tmp_path.iterdir())) == 1

    def test_open_and_exists(self, tmp_path):
        storage = LocalBlobStorage(str(tmp_path))
        name = storage.save(b'abc', 'image/gif').rsplit('/', 1)[1]

        assert storage.exists(name)
        assert storage.open(name) == b'abc'
        assert not storage.exists('.hidden')
        assert not storage.exists('missing.png')

    def test_path_traversal_is_flattened(self, tmp_path):
        storage = LocalBlobStorage(str(tmp_path))

        assert storage.path_for('../../etc/passwd') == str(tmp_path / 'passwd')


    def test_concurrent_saves_of_same_bytes(self, tmp_path):
        """Threads storing identical content all get the URL and leave one file."""
        storage = LocalBlobStorage(str(tmp_path))
        data = b'\x89PNG' + b'x' * 200_000
        workers = 4

        for _ in range(50):
            barrier = threading.Barrier(workers)
            urls = []
            errors = []

            def save():
                barrier.wait(timeout=10)
                try:
                    urls.append(storage.save(data, 'image/png'))
                except OSError as e:
                    errors.append(e)

            threads = [threading.Thread(target=save) for _ in range(workers)]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join(timeout=10)

            assert errors == []
            assert len(urls) == workers
            assert len(set(urls)) == 1
            assert [path.name for path in tmp_path.iterdir()] == [urls[0].rsplit('/', 1)[1]]
            os.remove(tmp_path / urls[0].rsplit('/', 1)[1])

    def test_failed_write_leaves_no_temp_file(self, tmp_path):
        storage = LocalBlobStorage(str(tmp_path))

        with patch('article_sync.services.media.storage.os.replace', side_effect=OSError('disk full')):
            with pytest.raises(OSError):
                storage.save(b'abc', 'image/png')

        assert list(tmp_path.iterdir()) == []
    def test_extension_for(self):
        assert extension_for('image/jpeg') == '.jpg'
        assert extension_for('IMAGE/PNG; q=1') == '.png'
        assert extension_for(None) == '.bin'


class TestRequestSessionPool:
    """Tests for RequestSessionPool."""

    def test_counts_requests_and_errors(self):
        from article_sync.services.media import RequestSessionPool

        pool = RequestSessionPool(pool_maxsize=2)
        with patch.object(requests.Session, 'request', side_effect=[make_response(), requests.ConnectionError()]):
            pool.get('https://mmbiz.qpic.cn/a.png', timeout=1)
            try:
                pool.get('https://mmbiz.qpic.cn/b.png', timeout=1)
            except requests.ConnectionError:
                pass

        assert pool.get_stats() == {'requests': 2, 'errors': 1}
        pool.close()

    def test_sends_referer(self):
        from article_sync.services.media.session_pool import DEFAULT_HEADERS, RequestSessionPool

        pool = RequestSessionPool()

        assert pool._session.headers['Referer'] == DEFAULT_HEADERS['Referer']
        pool.close()
