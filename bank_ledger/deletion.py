"""
Deletion Request Module

Customer-initiated, admin-reviewed account deletion. Approval is refused
while the account holds an active loan; rejection only clears the
account's deletion_requested flag.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from enum import Enum
import uuid

from .accounts import AccountManager, AccountStatus
from .audit import AuditTrail, AuditEventType
from .errors import ConflictError, NotFoundError, StateError, ValidationError
from .locks import AccountLockRegistry
from .logging_config import get_logger, log_action
from .notifications import Notifier
from .sessions import SessionManager
from .storage import StorageInterface, StorageRecord


class DeletionStatus(Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


@dataclass
class DeletionRequest(StorageRecord):
    """Request to delete an account, with the details the holder entered"""
    account_number: str
    holder_name: str
    contact: str
    ifsc_code: str
    reason: str
    had_loan: bool = False
    status: DeletionStatus = DeletionStatus.PENDING
    admin_comment: Optional[str] = None
    processed_by: Optional[str] = None
    processed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['status'] = self.status.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DeletionRequest':
        data = dict(data)
        data['status'] = DeletionStatus(data['status'])
        if data.get('processed_at'):
            data['processed_at'] = datetime.fromisoformat(data['processed_at'])
        return super().from_dict(data)


class DeletionManager:
    """
    Submission and admin review of deletion requests
    """

    def __init__(
        self,
        storage: StorageInterface,
        accounts: AccountManager,
        sessions: SessionManager,
        locks: AccountLockRegistry,
        audit_trail: AuditTrail,
        notifier: Optional[Notifier] = None
    ):
        self.storage = storage
        self.accounts = accounts
        self.sessions = sessions
        self.locks = locks
        self.audit_trail = audit_trail
        self.notifier = notifier
        self.table_name = "deletion_requests"
        self.logger = get_logger("bank_ledger.deletion")

    def get_request(self, request_id: str) -> Optional[DeletionRequest]:
        data = self.storage.load(self.table_name, request_id)
        return DeletionRequest.from_dict(data) if data else None

    def require_request(self, request_id: str) -> DeletionRequest:
        request = self.get_request(request_id)
        if request is None:
            raise NotFoundError(f"Deletion request {request_id} not found")
        return request

    def list_requests(self, status: Optional[DeletionStatus] = None) -> List[DeletionRequest]:
        filters = {'status': status.value} if status else {}
        requests = [DeletionRequest.from_dict(d) for d in self.storage.find(self.table_name, filters)]
        requests.sort(key=lambda r: r.created_at)
        return requests

    def list_pending(self) -> List[DeletionRequest]:
        return self.list_requests(DeletionStatus.PENDING)

    def submit(self, session_id: str, account_number: str, holder_name: str,
               contact: str, ifsc_code: str, reason: str) -> DeletionRequest:
        """
        File a deletion request from a customer session

        Raises:
            AuthorizationError: Session not bound to the account
            ValidationError: Missing reason or details that do not match
            ConflictError: A deletion request is already pending
        """
        self.sessions.require_account_session(session_id, account_number)
        if not reason or not reason.strip():
            raise ValidationError("A reason is required")

        with self.locks.acquire(account_number):
            account = self.accounts.require_operable(account_number)
            contact = (contact or "").strip()
            if ((holder_name or "").strip().lower() != account.holder_name.lower()
                    or (ifsc_code or "").strip().upper() != account.ifsc_code.upper()
                    or contact.lower() not in (account.email.lower(), account.phone_number)):
                raise ValidationError("Account details do not match our records")
            if account.deletion_requested or self._pending_for(account_number):
                raise ConflictError("A deletion request is already pending for this account")

            now = datetime.now(timezone.utc)
            request = DeletionRequest(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                account_number=account_number,
                holder_name=account.holder_name,
                contact=contact,
                ifsc_code=account.ifsc_code,
                reason=reason.strip(),
                had_loan=account.has_loan
            )
            self.storage.save(self.table_name, request.id, request.to_dict())
            self.accounts.update_fields(account_number, {'deletion_requested': True})

        log_action(
            self.logger, "info", "Deletion requested",
            user_id=account_number, action="request_deletion",
            resource=f"deletion_request:{request.id}", extra={"had_loan": request.had_loan}
        )
        self.audit_trail.try_log_event(
            AuditEventType.DELETION_REQUESTED, "deletion_request", request.id,
            {"account_number": account_number, "had_loan": request.had_loan}, user_id=account_number
        )
        if self.notifier:
            self.notifier.notify(
                "deletion_requested", account.email, holder_name=account.holder_name,
                account_number=account_number, request_id=request.id
            )
        return request

    def _pending_for(self, account_number: str) -> Optional[DeletionRequest]:
        matches = self.storage.find(self.table_name, {
            'account_number': account_number, 'status': DeletionStatus.PENDING.value
        })
        return DeletionRequest.from_dict(matches[0]) if matches else None

    def _close(self, request: DeletionRequest, status: DeletionStatus,
               admin: str, comment: Optional[str]) -> None:
        now = datetime.now(timezone.utc).isoformat()
        written = self.storage.update_if(
            self.table_name, request.id,
            lambda r: r['status'] == DeletionStatus.PENDING.value,
            {
                'status': status.value,
                'admin_comment': comment,
                'processed_by': admin,
                'processed_at': now,
                'updated_at': now,
            }
        )
        if not written:
            raise StateError(f"Deletion request {request.id} is no longer pending")

    def approve(self, request_id: str, admin_session_id: str, comment: str = "") -> bool:
        """
        Approve a PENDING request.

        Returns:
            False, with nothing changed, while the account still has an
            active loan; True once the account is DELETED with both
            security tracks locked
        """
        admin = self.sessions.require_admin(admin_session_id)
        request = self.require_request(request_id)
        if request.status != DeletionStatus.PENDING:
            raise StateError(f"Deletion request {request_id} is already {request.status.value}")

        with self.locks.acquire(request.account_number):
            account = self.accounts.require_account(request.account_number)
            if account.has_loan:
                log_action(
                    self.logger, "warning", "Deletion approval refused: active loan",
                    user_id=admin.principal, action="approve_deletion",
                    resource=f"deletion_request:{request_id}"
                )
                return False

            self._close(request, DeletionStatus.APPROVED, admin.principal, comment)
            self.accounts.update_fields(request.account_number, {
                'status': AccountStatus.DELETED.value,
                'is_deleted': True,
                'deletion_requested': False,
            })
            self.accounts.lock_all_tracks(request.account_number, actor=admin.principal)
            self.sessions.invalidate_for_account(request.account_number)

        log_action(
            self.logger, "info", "Deletion approved",
            user_id=admin.principal, action="approve_deletion",
            resource=f"deletion_request:{request_id}"
        )
        self.audit_trail.try_log_event(
            AuditEventType.DELETION_APPROVED, "deletion_request", request_id,
            {"account_number": request.account_number}, user_id=admin.principal
        )
        if self.notifier:
            self.notifier.notify(
                "deletion_approved", account.email, holder_name=account.holder_name,
                account_number=account.account_number, comment=comment or "-"
            )
        return True

    def reject(self, request_id: str, admin_session_id: str, comment: str) -> bool:
        """Reject a PENDING request; only the deletion_requested flag is cleared"""
        admin = self.sessions.require_admin(admin_session_id)
        if not comment or not comment.strip():
            raise ValidationError("A comment is required to reject a deletion request")
        request = self.require_request(request_id)
        if request.status != DeletionStatus.PENDING:
            raise StateError(f"Deletion request {request_id} is already {request.status.value}")

        with self.locks.acquire(request.account_number):
            self._close(request, DeletionStatus.REJECTED, admin.principal, comment.strip())
            account = self.accounts.get_account(request.account_number)
            if account is not None:
                self.accounts.update_fields(request.account_number, {'deletion_requested': False})

        self.audit_trail.try_log_event(
            AuditEventType.DELETION_REJECTED, "deletion_request", request_id,
            {"account_number": request.account_number, "comment": comment}, user_id=admin.principal
        )
        if self.notifier and account is not None:
            self.notifier.notify(
                "deletion_rejected", account.email, holder_name=account.holder_name,
                account_number=account.account_number, comment=comment
            )
        return True
