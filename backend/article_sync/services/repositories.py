"""
Persistence collaborators of the sync orchestrator

AccountConfigStore resolves a source id to its account row; ContentRepository
looks up and upserts content items by (source_id, external_id).
"""
from datetime import datetime
from typing import Dict, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import ContentItem, SourceAccount
from ..utils.logger import get_logger
from ..utils.timeutil import utcnow

logger = get_logger('repositories')

# Columns an upsert may write
CONTENT_FIELDS = ('title', 'author', 'digest', 'body', 'thumbnail_url', 'source_url', 'published_at', 'status')


class AccountConfigStore:
    """Source account lookup"""

    def __init__(self, session=None):
        self._session = session

    @property
    def session(self):
        return self._session if self._session is not None else db.session

    def find(self, source_id: str) -> Optional[SourceAccount]:
        return self.session.get(SourceAccount, source_id)

    def mark_synced(self, source_id: str, when: Optional[datetime] = None) -> None:
        """Stamp last_sync_at; failures are logged, the run result stands"""
        try:
            account = self.find(source_id)
            if account is not None:
                account.last_sync_at = when or utcnow()
                self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.warning(f"[AccountConfigStore] Could not stamp last_sync_at for {source_id}: {e}")


class ContentRepository:
    """Content items keyed by external id within a source"""

    def __init__(self, session=None):
        self._session = session

    @property
    def session(self):
        return self._session if self._session is not None else db.session

    def find_by_external_id(self, source_id: str, external_id: str) -> Optional[ContentItem]:
        return self.session.query(ContentItem).filter_by(
            source_id=source_id,
            external_id=external_id
        ).first()

    def upsert(self, source_id: str, external_id: str, values: Dict) -> Tuple[ContentItem, bool]:
        """Insert or update one item and commit.

        Returns:
            (item, created)

        Raises:
            SQLAlchemyError: the write failed (the session is rolled back)
        """
        try:
            item = self.find_by_external_id(source_id, external_id)
            created = item is None
            if created:
                item = ContentItem(source_id=source_id, external_id=external_id)
                self.session.add(item)

            for field in CONTENT_FIELDS:
                if field in values and values[field] is not None:
                    setattr(item, field, values[field])

            self.session.commit()
            return item, created
        except SQLAlchemyError:
            self.session.rollback()
            raise

    def count(self, source_id: str) -> int:
        return self.session.query(ContentItem).filter_by(source_id=source_id).count()
