"""
Synced article model
"""
from ..extensions import db
from ..utils.timeutil import utcnow, isoformat


class ContentItem(db.Model):
    """Durable record of a synced article, keyed by (source_id, external_id)"""
    __tablename__ = 'content_items'

    __table_args__ = (
        db.UniqueConstraint('source_id', 'external_id', name='uq_content_items_source_external'),
        db.Index('ix_content_items_source_published', 'source_id', 'published_at'),
    )

    STATUS_PUBLISHED = 'published'

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    source_id = db.Column(db.String(64), db.ForeignKey('source_accounts.id'), nullable=False, index=True)
    external_id = db.Column(db.String(128), nullable=False)

    title = db.Column(db.String(512), default='')
    author = db.Column(db.String(128), default='')
    digest = db.Column(db.Text, default='')
    # HTML body with media URLs rewritten to rehosted copies
    body = db.Column(db.Text, default='')
    thumbnail_url = db.Column(db.String(1024), default='')
    source_url = db.Column(db.String(1024), default='')
    published_at = db.Column(db.DateTime)
    status = db.Column(db.String(32), default=STATUS_PUBLISHED, nullable=False)

    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    def to_dict(self, include_body: bool = False):
        data = {
            'id': self.id,
            'source_id': self.source_id,
            'external_id': self.external_id,
            'title': self.title,
            'author': self.author,
            'digest': self.digest,
            'thumbnail_url': self.thumbnail_url,
            'source_url': self.source_url,
            'published_at': isoformat(self.published_at),
            'status': self.status,
            'created_at': isoformat(self.created_at),
            'updated_at': isoformat(self.updated_at),
        }
        if include_body:
            data['body'] = self.body
        return data

    def __repr__(self):
        return f'<ContentItem {self.source_id}/{self.external_id}>'
