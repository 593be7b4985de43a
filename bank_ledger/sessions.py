"""
Session Management Module

Login sessions for customers (bound to one account) and administrators.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional

from .errors import AuthorizationError
from .storage import StorageInterface, StorageRecord


class SessionRole(Enum):
    CUSTOMER = "customer"
    ADMIN = "admin"


@dataclass
class Session(StorageRecord):
    """Authenticated session"""
    principal: str                  # Account number or admin username
    role: SessionRole
    expires_at: datetime
    account_number: Optional[str] = None
    is_active: bool = True

    def is_valid(self, now: datetime) -> bool:
        return self.is_active and now < self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['role'] = self.role.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Session':
        data = dict(data)
        data['role'] = SessionRole(data['role'])
        data['expires_at'] = datetime.fromisoformat(data['expires_at'])
        return super().from_dict(data)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionManager:
    """Create, validate and invalidate sessions"""

    def __init__(self, storage: StorageInterface, timeout_minutes: int = 30,
                 clock: Callable[[], datetime] = _utcnow):
        self.storage = storage
        self.timeout = timedelta(minutes=timeout_minutes)
        self._clock = clock
        self.table_name = "sessions"

    def create(self, principal: str, role: SessionRole,
               account_number: Optional[str] = None) -> Session:
        now = self._clock()
        session = Session(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            principal=principal,
            role=role,
            expires_at=now + self.timeout,
            account_number=account_number
        )
        self.storage.save(self.table_name, session.id, session.to_dict())
        return session

    def get_active(self, session_id: Optional[str]) -> Optional[Session]:
        if not session_id:
            return None
        data = self.storage.load(self.table_name, session_id)
        if not data:
            return None
        session = Session.from_dict(data)
        return session if session.is_valid(self._clock()) else None

    def require_account_session(self, session_id: Optional[str], account_number: str) -> Session:
        """
        Raises:
            AuthorizationError: If the session is missing, expired or bound to another account
        """
        session = self.get_active(session_id)
        if session is None:
            raise AuthorizationError("Session expired or invalid. Please log in again.")
        if session.role != SessionRole.CUSTOMER or session.account_number != account_number:
            raise AuthorizationError("Session does not belong to this account")
        return session

    def require_admin(self, session_id: Optional[str]) -> Session:
        session = self.get_active(session_id)
        if session is None or session.role != SessionRole.ADMIN:
            raise AuthorizationError("Admin privileges required")
        return session

    def invalidate(self, session_id: str) -> bool:
        return self.storage.update(self.table_name, session_id, {
            'is_active': False,
            'updated_at': self._clock().isoformat()
        })

    def invalidate_for_account(self, account_number: str) -> int:
        count = 0
        for data in self.storage.find(self.table_name, {'account_number': account_number,
                                                        'is_active': True}):
            if self.invalidate(data['id']):
                count += 1
        return count
