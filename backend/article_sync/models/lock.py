"""
Distributed lock model

One row per protected key. The unique constraint on ``key`` is what makes
the table usable as a cross-process mutex: of several concurrent inserts for
the same key only one can commit.
"""
from datetime import datetime
from typing import Optional

from ..extensions import db
from ..utils.timeutil import utcnow, isoformat


class DistributedLock(db.Model):
    """Lease-based lock row"""
    __tablename__ = 'distributed_locks'

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    key = db.Column(db.String(255), unique=True, nullable=False, index=True)
    # Fencing token, regenerated on every acquire
    token = db.Column(db.String(64), nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False, index=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())

    def to_dict(self, now: Optional[datetime] = None):
        now = now or utcnow()
        return {
            'key': self.key,
            'expires_at': isoformat(self.expires_at),
            'created_at': isoformat(self.created_at),
            'active': not self.is_expired(now),
            'remaining_seconds': max(0, int((self.expires_at - now).total_seconds())),
        }

    def __repr__(self):
        return f'<DistributedLock {self.key}>'
