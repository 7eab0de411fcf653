"""
Origin content API client (WeChat Official Account style)

    GET  {base}/token?grant_type=client_credential&appid=..&secret=..
    POST {base}/freepublish/batchget?access_token=..  {offset, count, no_content}

Each published item can bundle several articles; they are flattened into
ArticlePayload objects whose external id is "<article_id>:<index>".
Any non-zero errcode raises OriginApiError (OriginAuthError for rejected
credentials or tokens).
"""
import threading
import time
from datetime import date, datetime, time as dt_time, timezone
from typing import Callable, Dict, List, Optional

import requests

from ..errors import OriginApiError, OriginAuthError
from ..utils.logger import get_logger
from ..utils.timeutil import from_timestamp
from .media.session_pool import RequestSessionPool, get_request_session_pool

logger = get_logger('origin_api')

# invalid credential, invalid appid, invalid secret/appid pair, invalid ip,
# missing access token, access token expired
AUTH_ERRCODES = {40001, 40013, 40125, 40164, 41001, 42001}

# Refresh cached tokens this many seconds before they expire
TOKEN_EXPIRY_MARGIN = 300


class ArticlePayload:
    """One article as returned by the origin API"""

    def __init__(
        self,
        external_id: Optional[str],
        title: str = '',
        author: str = '',
        digest: str = '',
        body: str = '',
        thumbnail_url: str = '',
        source_url: str = '',
        published_at: Optional[datetime] = None,
        malformed_reason: Optional[str] = None
    ):
        self.external_id = external_id
        self.title = title
        self.author = author
        self.digest = digest
        self.body = body
        self.thumbnail_url = thumbnail_url
        self.source_url = source_url
        self.published_at = published_at
        self.malformed_reason = malformed_reason

    @classmethod
    def from_published_item(cls, item: Dict) -> List['ArticlePayload']:
        """Flatten one freepublish item into its articles"""
        article_id = item.get('article_id')
        content = item.get('content') or {}
        news = content.get('news_item') or content.get('item')

        if not article_id:
            return [cls(None, malformed_reason='published item has no article_id')]
        if not isinstance(news, list) or not news:
            return [cls(None, malformed_reason=f'published item {article_id} has no articles')]

        published_at = from_timestamp(item.get('publish_time') or item.get('update_time') or content.get('update_time'))
        articles = []
        for index, news_item in enumerate(news):
            if not isinstance(news_item, dict):
                articles.append(cls(None, malformed_reason=f'article {article_id}:{index} is not an object'))
                continue
            articles.append(cls(
                external_id=f'{article_id}:{index}',
                title=news_item.get('title') or '',
                author=news_item.get('author') or '',
                digest=news_item.get('digest') or '',
                body=news_item.get('content') or '',
                thumbnail_url=news_item.get('thumb_url') or '',
                source_url=news_item.get('url') or news_item.get('content_source_url') or '',
                published_at=published_at,
            ))
        return articles

    def to_dict(self) -> Dict:
        return {
            'external_id': self.external_id,
            'title': self.title,
            'author': self.author,
            'digest': self.digest,
            'thumbnail_url': self.thumbnail_url,
            'source_url': self.source_url,
            'published_at': self.published_at.isoformat() if self.published_at else None,
        }

    def __repr__(self):
        return f'<ArticlePayload {self.external_id} {self.title!r}>'


class ListPage:
    """One page of the published listing"""

    def __init__(self, items: List[ArticlePayload], next_cursor: Optional[int] = None,
                 total_count: Optional[int] = None):
        self.items = items
        self.next_cursor = next_cursor
        self.total_count = total_count


def _date_to_timestamp(value) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return int(value.replace(tzinfo=value.tzinfo or timezone.utc).timestamp())
    if isinstance(value, date):
        return int(datetime.combine(value, dt_time.min, tzinfo=timezone.utc).timestamp())
    return int(value)


class OriginApiClient:
    """HTTP client for the origin content API.

    Example:
        >>> client = OriginApiClient('https://api.weixin.qq.com/cgi-bin')
        >>> token = client.get_access_token({'app_id': 'wx..', 'app_secret': '..'})
        >>> page = client.list_published(token)
        >>> while page.next_cursor is not None:
        ...     page = client.list_published(token, page.next_cursor)
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10,
        page_size: int = 20,
        session_pool: Optional[RequestSessionPool] = None,
        clock: Callable[[], float] = time.time
    ):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.page_size = page_size
        self._session_pool = session_pool
        self._clock = clock
        self._token_cache: Dict[str, tuple] = {}
        self._token_lock = threading.Lock()

    @property
    def session_pool(self) -> RequestSessionPool:
        if self._session_pool is None:
            self._session_pool = get_request_session_pool()
        return self._session_pool

    def get_access_token(self, credentials: Dict) -> str:
        """Exchange app credentials for an access token (cached until near expiry)

        Raises:
            OriginAuthError: credentials missing or rejected
            OriginApiError: transport or protocol failure
        """
        app_id = credentials.get('app_id')
        app_secret = credentials.get('app_secret')
        if not app_id or not app_secret:
            raise OriginAuthError('Source credentials are incomplete')

        with self._token_lock:
            cached = self._token_cache.get(app_id)
            if cached and cached[1] > self._clock():
                return cached[0]

        data = self._request('GET', '/token', params={
            'grant_type': 'client_credential',
            'appid': app_id,
            'secret': app_secret,
        })

        token = data.get('access_token')
        if not token:
            raise OriginApiError('Token response has no access_token')

        expires_in = int(data.get('expires_in') or 7200)
        margin = min(TOKEN_EXPIRY_MARGIN, expires_in // 2)
        with self._token_lock:
            self._token_cache[app_id] = (token, self._clock() + expires_in - margin)

        logger.info(f"[OriginApiClient] Access token refreshed for {app_id} (expires_in={expires_in}s)")
        return token

    def invalidate_token(self, token: str) -> None:
        with self._token_lock:
            for app_id, (cached, _) in list(self._token_cache.items()):
                if cached == token:
                    del self._token_cache[app_id]

    def list_published(
        self,
        token: str,
        cursor: Optional[int] = None,
        page_size: Optional[int] = None,
        begin_date=None,
        end_date=None
    ) -> ListPage:
        """Fetch one page of published articles starting at offset ``cursor``"""
        offset = int(cursor or 0)
        count = page_size or self.page_size

        body = {'offset': offset, 'count': count, 'no_content': 0}
        begin_ts = _date_to_timestamp(begin_date)
        end_ts = _date_to_timestamp(end_date)
        if begin_ts:
            body['begin_date'] = begin_ts
        if end_ts:
            body['end_date'] = end_ts

        try:
            data = self._request('POST', '/freepublish/batchget', params={'access_token': token}, json=body)
        except OriginAuthError:
            self.invalidate_token(token)
            raise

        raw_items = data.get('item')
        if not isinstance(raw_items, list):
            raise OriginApiError('Published listing response has no item list')

        items: List[ArticlePayload] = []
        for raw in raw_items:
            items.extend(ArticlePayload.from_published_item(raw if isinstance(raw, dict) else {}))

        total_count = data.get('total_count')
        consumed = offset + len(raw_items)
        exhausted = (
            len(raw_items) < count
            or (total_count is not None and consumed >= int(total_count))
        )

        logger.info(
            f"[OriginApiClient] Listed offset={offset}: {len(raw_items)} published items, "
            f"{len(items)} articles (total={total_count})"
        )
        return ListPage(items, next_cursor=None if exhausted else consumed, total_count=total_count)

    def _request(self, method: str, path: str, **kwargs) -> Dict:
        url = f'{self.base_url}{path}'
        try:
            response = self.session_pool.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise OriginApiError(f'{method} {path} failed: {e}') from e

        if response.status_code != 200:
            raise OriginApiError(f'{method} {path} returned HTTP {response.status_code}')

        try:
            data = response.json()
        except ValueError as e:
            raise OriginApiError(f'{method} {path} returned invalid JSON') from e

        if not isinstance(data, dict):
            raise OriginApiError(f'{method} {path} returned unexpected payload')

        errcode = data.get('errcode') or 0
        if errcode != 0:
            message = f"{path} errcode={errcode}: {data.get('errmsg', '')}"
            if errcode in AUTH_ERRCODES:
                raise OriginAuthError(message, errcode)
            raise OriginApiError(message, errcode)

        return data
