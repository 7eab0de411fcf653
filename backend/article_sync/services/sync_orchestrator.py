"""
Sync Orchestrator - pull one source's published articles into the database

    idle -> acquiring-lock -> listing -> processing -> releasing-lock -> done
                 |
                 +-> lock-busy (another worker holds "sync:<source_id>")

With ``bypass_lock`` the lock states are skipped entirely. Mutual exclusion
is then gone and concurrent bypassed runs may race; the upsert keyed by
(source_id, external_id) keeps that from creating duplicates.

Failure scope:
    busy lock              -> skipped_locked, no other work, not an error
    unknown/inactive source,
    auth or listing error  -> success=False for the run
    one item fails         -> counted as failed, the run continues
    one media URL fails    -> item is still persisted with the remote URL
"""
from typing import Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from ..errors import ConfigurationError, OriginApiError, OriginAuthError, MalformedItemError
from ..models import ContentItem
from ..utils.logger import get_logger, log_sync_event
from ..utils.timeutil import isoformat
from .lock_store import LockStore
from .media import MediaResourcePipeline
from .origin_api import ArticlePayload, OriginApiClient
from .repositories import AccountConfigStore, ContentRepository
from .sync_run import SyncRun

logger = get_logger('sync_orchestrator')


class SyncOrchestrator:
    """Lock, list, rehost and upsert the articles of one source.

    All collaborators are passed in; see services.factory for the wiring
    used by the app.

    Example:
        >>> orchestrator = build_sync_orchestrator(current_app.config)
        >>> run = orchestrator.sync('gh_123', force_update=False)
        >>> run.to_dict()
    """

    LOCK_PREFIX = 'sync:'

    def __init__(
        self,
        lock_store: LockStore,
        origin_client: OriginApiClient,
        accounts: AccountConfigStore,
        content: ContentRepository,
        pipeline: MediaResourcePipeline,
        lock_ttl: int = 1800,
        max_errors: int = 100
    ):
        self.lock_store = lock_store
        self.origin_client = origin_client
        self.accounts = accounts
        self.content = content
        self.pipeline = pipeline
        self.lock_ttl = lock_ttl
        self.max_errors = max_errors

    @classmethod
    def lock_key(cls, source_id: str) -> str:
        return f'{cls.LOCK_PREFIX}{source_id}'

    def sync(
        self,
        source_id: str,
        force_update: bool = False,
        bypass_lock: bool = False,
        max_articles: int = 0,
        begin_date=None,
        end_date=None
    ) -> SyncRun:
        """Run one sync of ``source_id``.

        Args:
            source_id: Source account id
            force_update: Re-process items that already exist
            bypass_lock: Skip the per-source lock (operator escape hatch)
            max_articles: Stop listing after this many articles (0 = all)
            begin_date: Optional lower bound passed to the listing
            end_date: Optional upper bound passed to the listing

        Returns:
            The SyncRun summary; never raises for run-level failures
        """
        run = SyncRun(source_id, max_errors=self.max_errors, bypass_lock=bypass_lock)
        key = self.lock_key(source_id)
        lock_token = None

        if bypass_lock:
            logger.warning(f"[SyncOrchestrator] Lock bypassed for {source_id}, concurrent runs are not excluded")
        else:
            run.state = SyncRun.STATE_ACQUIRING_LOCK
            try:
                lock_token = self.lock_store.acquire(key, self.lock_ttl)
            except SQLAlchemyError as e:
                logger.error(f"[SyncOrchestrator] Lock store unavailable for {source_id}: {e}")
                run.add_error(f'Lock store unavailable: {e}')
                return run.finish(False, 'Lock store unavailable')

            if lock_token is None:
                logger.info(f"[SyncOrchestrator] {source_id} is already being synced, skipping")
                run.skipped_locked = True
                return run.finish(False, 'A sync of this source is already running', SyncRun.STATE_LOCK_BUSY)

        log_sync_event(source_id, 'started', {'force_update': force_update, 'bypass_lock': bypass_lock})

        success, message = False, ''
        try:
            success, message = self._run(run, force_update, max_articles, begin_date, end_date)
        except Exception as e:
            logger.exception(f"[SyncOrchestrator] Sync of {source_id} aborted")
            run.add_error(f'Unexpected error: {e}')
            message = f'Sync aborted: {e}'
        finally:
            if lock_token is not None:
                run.state = SyncRun.STATE_RELEASING_LOCK
                self.lock_store.release(key, lock_token)

        if success:
            self.accounts.mark_synced(source_id)

        run.finish(success, message)
        log_sync_event(source_id, 'finished', {
            'success': run.success,
            'processed': run.processed,
            'created': run.created,
            'updated': run.updated,
            'skipped': run.skipped,
            'failed': run.failed,
        })
        return run

    def _run(self, run: SyncRun, force_update: bool, max_articles: int, begin_date, end_date):
        source_id = run.source_id

        try:
            credentials = self._load_credentials(source_id)
        except ConfigurationError as e:
            logger.error(f"[SyncOrchestrator] {e}")
            run.add_error(str(e))
            return False, str(e)

        run.state = SyncRun.STATE_LISTING
        try:
            access_token = self.origin_client.get_access_token(credentials)
            articles = self._list_all(access_token, max_articles, begin_date, end_date)
        except OriginAuthError as e:
            logger.error(f"[SyncOrchestrator] Origin API rejected credentials of {source_id}: {e}")
            run.add_error(f'Authentication failed: {e}')
            return False, 'Origin API rejected the source credentials'
        except OriginApiError as e:
            logger.error(f"[SyncOrchestrator] Listing failed for {source_id}: {e}")
            run.add_error(f'Listing failed: {e}')
            return False, 'Could not list published articles'

        if not articles:
            return True, 'No published articles found'

        logger.info(f"[SyncOrchestrator] {source_id}: {len(articles)} articles listed")

        run.state = SyncRun.STATE_PROCESSING
        for payload in articles:
            self._process_item(run, payload, force_update)

        logger.info(f"[SyncOrchestrator] {source_id}: {run.summary_line()}")
        return True, f'Sync finished, {run.summary_line()}'

    def _load_credentials(self, source_id: str) -> Dict:
        account = self.accounts.find(source_id)
        if account is None:
            raise ConfigurationError(f'Unknown source {source_id}')
        if not account.is_active:
            raise ConfigurationError(f'Source {source_id} is inactive')

        credentials = account.get_credentials()
        if not credentials.get('app_id') or not credentials.get('app_secret'):
            raise ConfigurationError(f'Source {source_id} has no API credentials')
        return credentials

    def _list_all(self, access_token: str, max_articles: int, begin_date, end_date) -> List[ArticlePayload]:
        """Read every page before any item is processed"""
        articles: List[ArticlePayload] = []
        cursor = None

        while True:
            page = self.origin_client.list_published(
                access_token, cursor, begin_date=begin_date, end_date=end_date
            )
            articles.extend(page.items)

            if max_articles and len(articles) >= max_articles:
                return articles[:max_articles]
            if page.next_cursor is None:
                return articles
            if cursor is not None and page.next_cursor <= cursor:
                raise OriginApiError(f'Listing cursor did not advance past {cursor}')
            cursor = page.next_cursor

    def _process_item(self, run: SyncRun, payload: ArticlePayload, force_update: bool) -> None:
        source_id = run.source_id
        external_id = payload.external_id

        try:
            if payload.malformed_reason or not external_id:
                raise MalformedItemError(payload.malformed_reason or 'article has no id')

            existing = self.content.find_by_external_id(source_id, external_id)
            if existing is not None and not force_update:
                run.record_skipped()
                return

            media = self.pipeline.process(payload.body, payload.thumbnail_url)
            if media.errors:
                run.record_media_failures(len(media.errors))
                for error in media.errors:
                    run.add_error(f'Media not rehosted: {error}', external_id)

            _, created = self.content.upsert(source_id, external_id, {
                'title': payload.title,
                'author': payload.author,
                'digest': payload.digest,
                'body': media.document,
                'thumbnail_url': media.thumbnail_url,
                'source_url': payload.source_url,
                'published_at': payload.published_at,
                'status': ContentItem.STATUS_PUBLISHED,
            })
        except MalformedItemError as e:
            logger.warning(f"[SyncOrchestrator] Skipping malformed item from {source_id}: {e}")
            run.record_skipped()
            run.add_error(f'Malformed item skipped: {e}')
            return
        except SQLAlchemyError as e:
            logger.error(f"[SyncOrchestrator] Could not persist {source_id}/{external_id}: {e}")
            run.record_failed()
            run.add_error(f'Persist failed: {e}', external_id)
            return
        except Exception as e:
            logger.exception(f"[SyncOrchestrator] Item {source_id}/{external_id} failed")
            run.record_failed()
            run.add_error(f'Processing failed: {e}', external_id)
            return

        if created:
            run.record_created()
        else:
            run.record_updated()

    def sync_status(self, source_id: str) -> Optional[Dict]:
        """Current lock state and last sync time, None for an unknown source"""
        account = self.accounts.find(source_id)
        if account is None:
            return None
        return {
            'source_id': source_id,
            'name': account.name,
            'is_active': account.is_active,
            'is_syncing': self.lock_store.is_locked(self.lock_key(source_id)),
            'last_sync_at': isoformat(account.last_sync_at),
        }
