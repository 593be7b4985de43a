"""
Lockout Tracker Module

Two independent lockout tracks per account: the login track gates
authentication, the transaction track gates money movement. Each track is a
small tagged state value so that "locked implies counter >= threshold" holds
by construction.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from .audit import AuditTrail, AuditEventType
from .errors import NotFoundError
from .locks import AccountLockRegistry
from .logging_config import get_logger, log_action
from .storage import StorageInterface


class LockTrack(Enum):
    """Independent lockout tracks"""
    LOGIN = "login"
    TRANSACTION = "transaction"

    @property
    def field_name(self) -> str:
        return f"{self.value}_lock"


class LockStatus(Enum):
    UNLOCKED = "unlocked"
    LOCKED = "locked"


@dataclass(frozen=True)
class TrackState:
    """State of one track: status, failure counter and when it locked"""
    status: LockStatus = LockStatus.UNLOCKED
    failed_attempts: int = 0
    locked_at: Optional[datetime] = None

    @property
    def is_locked(self) -> bool:
        return self.status == LockStatus.LOCKED

    @classmethod
    def unlocked(cls) -> 'TrackState':
        return cls()

    @classmethod
    def locked(cls, failed_attempts: int, threshold: int,
               at: Optional[datetime] = None) -> 'TrackState':
        return cls(
            status=LockStatus.LOCKED,
            failed_attempts=max(failed_attempts, threshold),
            locked_at=at or datetime.now(timezone.utc)
        )

    def after_failure(self, threshold: int) -> 'TrackState':
        """Locked tracks stay locked and stop counting"""
        if self.is_locked:
            return self
        attempts = self.failed_attempts + 1
        if attempts >= threshold:
            return TrackState.locked(attempts, threshold)
        return replace(self, failed_attempts=attempts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status.value,
            'failed_attempts': self.failed_attempts,
            'locked_at': self.locked_at.isoformat() if self.locked_at else None
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'TrackState':
        if not data:
            return cls.unlocked()
        locked_at = data.get('locked_at')
        return cls(
            status=LockStatus(data.get('status', LockStatus.UNLOCKED.value)),
            failed_attempts=int(data.get('failed_attempts', 0)),
            locked_at=datetime.fromisoformat(locked_at) if locked_at else None
        )


class LockoutTracker:
    """
    Per-account failure counters and lock flags stored on the account record
    """

    def __init__(
        self,
        storage: StorageInterface,
        locks: AccountLockRegistry,
        audit_trail: Optional[AuditTrail] = None,
        login_threshold: int = 3,
        transaction_threshold: int = 3,
        table_name: str = "accounts"
    ):
        self.storage = storage
        self.locks = locks
        self.audit_trail = audit_trail
        self.thresholds = {
            LockTrack.LOGIN: login_threshold,
            LockTrack.TRANSACTION: transaction_threshold,
        }
        self.table_name = table_name
        self.logger = get_logger("bank_ledger.lockout")

    def get_state(self, account_number: str, track: LockTrack) -> TrackState:
        record = self.storage.load(self.table_name, account_number)
        if record is None:
            raise NotFoundError(f"Account {account_number} not found")
        return TrackState.from_dict(record.get(track.field_name))

    def _write(self, account_number: str, track: LockTrack, state: TrackState) -> None:
        self.storage.update(self.table_name, account_number, {
            track.field_name: state.to_dict(),
            'updated_at': datetime.now(timezone.utc).isoformat()
        })

    def is_locked(self, account_number: str, track: LockTrack) -> bool:
        return self.get_state(account_number, track).is_locked

    def remaining_attempts(self, account_number: str, track: LockTrack) -> int:
        state = self.get_state(account_number, track)
        return max(self.thresholds[track] - state.failed_attempts, 0)

    def record_failure(self, account_number: str, track: LockTrack) -> TrackState:
        """
        Count a failed verification; locks the track at the threshold

        Returns:
            Updated track state
        """
        with self.locks.acquire(account_number):
            before = self.get_state(account_number, track)
            after = before.after_failure(self.thresholds[track])
            if after != before:
                self._write(account_number, track, after)

        if after.is_locked and not before.is_locked:
            log_action(
                self.logger, "warning", f"{track.value} track locked",
                user_id=account_number, action="lock_track",
                resource=f"account:{account_number}",
                extra={"track": track.value, "failed_attempts": after.failed_attempts}
            )
            if self.audit_trail:
                self.audit_trail.try_log_event(
                    AuditEventType.TRACK_LOCKED, "account", account_number,
                    {"track": track.value, "failed_attempts": after.failed_attempts}
                )
        return after

    def record_success(self, account_number: str, track: LockTrack) -> TrackState:
        """Reset the counter after a successful verification of an unlocked track"""
        with self.locks.acquire(account_number):
            state = self.get_state(account_number, track)
            if state.is_locked or state.failed_attempts == 0:
                return state
            state = TrackState.unlocked()
            self._write(account_number, track, state)
            return state

    def reset(self, account_number: str, track: LockTrack, actor: Optional[str] = None) -> None:
        """Clear counter and lock flag (admin unlock)"""
        with self.locks.acquire(account_number):
            self.get_state(account_number, track)
            self._write(account_number, track, TrackState.unlocked())

        if self.audit_trail:
            self.audit_trail.try_log_event(
                AuditEventType.TRACK_UNLOCKED, "account", account_number,
                {"track": track.value}, user_id=actor
            )

    def force_lock(self, account_number: str, track: LockTrack, actor: Optional[str] = None) -> None:
        """Lock a track regardless of its counter"""
        with self.locks.acquire(account_number):
            state = self.get_state(account_number, track)
            if state.is_locked:
                return
            self._write(account_number, track,
                        TrackState.locked(state.failed_attempts, self.thresholds[track]))

        if self.audit_trail:
            self.audit_trail.try_log_event(
                AuditEventType.TRACK_LOCKED, "account", account_number,
                {"track": track.value, "forced": True}, user_id=actor
            )
