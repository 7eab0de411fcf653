"""
Pytest Configuration and Fixtures

This module provides shared fixtures and fakes for all tests.
"""
import hashlib
import os
import sys
import threading
from datetime import datetime, timedelta

import pytest

# Add backend to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from article_sync import create_app
from article_sync.extensions import db
from article_sync.config import TestingConfig
from article_sync.models import SourceAccount
from article_sync.services.media import (
    BlobStorage,
    DownloadResult,
    MediaResourcePipeline,
    ResourceExtractor,
)
from article_sync.services.origin_api import ArticlePayload, ListPage

REMOTE_HOSTS = ['mmbiz.qpic.cn', '*.qlogo.cn']
ADMIN_KEY = 'test-admin-key'


@pytest.fixture(scope='function')
def app(tmp_path):
    """Create a fresh application and in-memory database per test."""

    class Config(TestingConfig):
        MEDIA_PATH = str(tmp_path / 'media')
        ADMIN_API_KEY = ADMIN_KEY
        REMOTE_MEDIA_HOSTS = REMOTE_HOSTS

    app = create_app(Config)

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def runner(app):
    """Create CLI runner."""
    return app.test_cli_runner()


@pytest.fixture
def source(app):
    """An active source account with credentials."""
    account = SourceAccount(id='gh_test', name='Test Source', app_id='wx_test_app', is_active=True)
    account.set_app_secret('test-secret')
    db.session.add(account)
    db.session.commit()
    return account


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


class FakeBlobStorage(BlobStorage):
    """Keeps blobs in memory; URL is derived from the content."""

    def __init__(self, base_url='/api/media'):
        self.base_url = base_url
        self.blobs = {}
        self._lock = threading.Lock()

    def save(self, data, mime_type):
        name = hashlib.sha1(data).hexdigest()[:16] + '.jpg'
        with self._lock:
            self.blobs[name] = (data, mime_type)
        return f'{self.base_url}/{name}'

    def open(self, name):
        return self.blobs[name][0]


class FakeDownloader:
    """Stands in for ResourceDownloader; URLs listed in ``fail`` come back failed."""

    def __init__(self, fail=()):
        self.fail = set(fail)
        self.calls = []

    def download_many(self, urls, max_concurrency=None, request_timeout=None):
        urls = list(dict.fromkeys(urls))
        self.calls.append(urls)
        results = {}
        for url in urls:
            if url in self.fail:
                results[url] = DownloadResult(url, error=f'Download failed with HTTP 404 ({url})')
            else:
                name = hashlib.sha1(url.encode('utf-8')).hexdigest()[:16]
                results[url] = DownloadResult(
                    url, resolved_url=f'/api/media/{name}.jpg', mime_type='image/jpeg', byte_size=128
                )
        return results

    @property
    def downloaded(self):
        return [url for call in self.calls for url in call]


class FakeOriginClient:
    """Origin API double serving pre-built pages of ArticlePayload."""

    def __init__(self, pages=None, token_error=None, list_error=None, fail_on_page=None):
        self.pages = pages if pages is not None else [[]]
        self.token_error = token_error
        self.list_error = list_error
        self.fail_on_page = fail_on_page
        self.token_calls = 0
        self.list_calls = []

    def get_access_token(self, credentials):
        self.token_calls += 1
        if self.token_error:
            raise self.token_error
        return 'access-token'

    def list_published(self, token, cursor=None, page_size=None, begin_date=None, end_date=None):
        index = cursor or 0
        self.list_calls.append({'cursor': cursor, 'begin_date': begin_date, 'end_date': end_date})
        if self.list_error and (self.fail_on_page is None or self.fail_on_page == index):
            raise self.list_error
        next_cursor = index + 1 if index + 1 < len(self.pages) else None
        return ListPage(list(self.pages[index]), next_cursor=next_cursor)

    @property
    def api_calls(self):
        return self.token_calls + len(self.list_calls)


def make_article(external_id, body='', thumbnail_url='', title=None):
    return ArticlePayload(
        external_id=external_id,
        title=title or f'Article {external_id}',
        author='Author',
        digest='Digest',
        body=body,
        thumbnail_url=thumbnail_url,
        source_url=f'https://mp.weixin.qq.com/s/{external_id}',
        published_at=datetime(2024, 1, 1, 8, 0, 0),
    )


def make_pipeline(downloader=None):
    return MediaResourcePipeline(
        ResourceExtractor(REMOTE_HOSTS, local_base_url='/api/media'),
        downloader or FakeDownloader(),
    )


@pytest.fixture
def fake_downloader():
    return FakeDownloader()


@pytest.fixture
def pipeline(fake_downloader):
    return make_pipeline(fake_downloader)
