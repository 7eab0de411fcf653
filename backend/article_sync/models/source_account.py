"""
Content source account model

Holds the credentials used against the origin content API. The app secret
is stored encrypted (see utils.crypto).
"""
from ..extensions import db
from ..utils.crypto import get_crypto
from ..utils.timeutil import utcnow, isoformat


class SourceAccount(db.Model):
    """Origin account (e.g. one official account) that articles are pulled from"""
    __tablename__ = 'source_accounts'

    id = db.Column(db.String(64), primary_key=True)
    name = db.Column(db.String(128))
    app_id = db.Column(db.String(128))
    encrypted_app_secret = db.Column(db.Text)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    last_sync_at = db.Column(db.DateTime)

    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    items = db.relationship('ContentItem', backref='source', lazy='dynamic')

    def get_app_secret(self) -> str:
        return get_crypto().decrypt(self.encrypted_app_secret or '')

    def set_app_secret(self, secret: str) -> None:
        self.encrypted_app_secret = get_crypto().encrypt(secret or '')

    def get_credentials(self) -> dict:
        return {
            'app_id': self.app_id or '',
            'app_secret': self.get_app_secret(),
        }

    def to_dict(self):
        """Serialize without secrets"""
        return {
            'id': self.id,
            'name': self.name,
            'app_id': self.app_id,
            'is_active': self.is_active,
            'has_secret': bool(self.encrypted_app_secret),
            'last_sync_at': isoformat(self.last_sync_at),
            'created_at': isoformat(self.created_at),
        }

    def __repr__(self):
        return f'<SourceAccount {self.id}>'
