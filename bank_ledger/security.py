"""
Account Security Module

Login and transaction-PIN verification gated by the lockout tracker,
legacy plaintext migration, OTP challenges and administrator accounts.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .audit import AuditTrail, AuditEventType
from .credentials import CredentialVerifier
from .errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from .lockout import LockoutTracker, LockTrack
from .logging_config import get_logger, log_action
from .notifications import Notifier, NotificationChannel
from .otp import OTPChallengeStore
from .sessions import Session, SessionManager, SessionRole
from .storage import StorageInterface
from .validation import validate_email, validate_phone, validate_pin


SECRET_FIELDS = {
    LockTrack.LOGIN: 'login_secret_hash',
    LockTrack.TRANSACTION: 'transaction_secret_hash',
}

TRACK_LABELS = {
    LockTrack.LOGIN: "Login",
    LockTrack.TRANSACTION: "Transaction PIN",
}


class AccountSecurity:
    """
    Verifies customer secrets through the lockout tracker and manages
    admin credentials and OTP challenges.
    """

    def __init__(
        self,
        storage: StorageInterface,
        verifier: CredentialVerifier,
        lockout: LockoutTracker,
        sessions: SessionManager,
        otp_store: OTPChallengeStore,
        notifier: Optional[Notifier] = None,
        audit_trail: Optional[AuditTrail] = None,
        default_admin: str = "admin"
    ):
        self.storage = storage
        self.verifier = verifier
        self.lockout = lockout
        self.sessions = sessions
        self.otp_store = otp_store
        self.notifier = notifier
        self.audit_trail = audit_trail
        self.default_admin = default_admin
        self.table_name = "accounts"
        self.admin_table = "admins"
        self.logger = get_logger("bank_ledger.security")

    def _load(self, account_number: str) -> Dict[str, Any]:
        record = self.storage.load(self.table_name, account_number)
        if record is None:
            raise NotFoundError(f"Account {account_number} not found")
        return record

    def _verify_track(self, account_number: str, track: LockTrack, secret: str) -> Dict[str, Any]:
        """
        Shared gate for both tracks: refuse while locked, count failures,
        reset on success and migrate legacy plaintext secrets.
        """
        record = self._load(account_number)
        label = TRACK_LABELS[track]

        if record.get('is_deleted') or record.get('status') == 'DELETED':
            raise AuthorizationError("Account is deleted")
        if self.lockout.is_locked(account_number, track):
            raise AuthorizationError(f"{label} is locked after repeated failures. Contact an administrator.")

        result = self.verifier.verify(secret, record.get(SECRET_FIELDS[track]) or "")
        if not result:
            state = self.lockout.record_failure(account_number, track)
            if self.audit_trail:
                self.audit_trail.try_log_event(
                    AuditEventType.LOGIN_FAILED if track == LockTrack.LOGIN else AuditEventType.PIN_FAILED,
                    "account", account_number, {"failed_attempts": state.failed_attempts}
                )
            if state.is_locked:
                if self.notifier:
                    self.notifier.notify(
                        "track_locked", record.get('email'),
                        holder_name=record.get('holder_name'), account_number=account_number,
                        track=label.lower()
                    )
                raise AuthorizationError(f"{label} locked after too many failed attempts")
            remaining = self.lockout.remaining_attempts(account_number, track)
            raise AuthorizationError(f"Invalid {label.lower()}. {remaining} attempt(s) left")

        self.lockout.record_success(account_number, track)
        if result.needs_migration:
            self.storage.update(self.table_name, account_number, {
                SECRET_FIELDS[track]: self.verifier.hash(secret)
            })
            log_action(
                self.logger, "info", f"Migrated legacy {label.lower()} to hashed form",
                user_id=account_number, action="migrate_secret",
                resource=f"account:{account_number}"
            )
            if self.audit_trail:
                self.audit_trail.try_log_event(
                    AuditEventType.SECRET_MIGRATED, "account", account_number, {"track": track.value}
                )
        return record

    # Customer authentication

    def login(self, account_number: str, secret: str) -> Session:
        """
        Verify the login secret and open a customer session

        Raises:
            NotFoundError: Unknown account
            AuthorizationError: Wrong secret, locked login track or deleted account
        """
        self._verify_track(account_number, LockTrack.LOGIN, secret)
        session = self.sessions.create(account_number, SessionRole.CUSTOMER, account_number)
        if self.audit_trail:
            self.audit_trail.try_log_event(
                AuditEventType.LOGIN_SUCCESS, "account", account_number,
                {"session_id": session.id}, user_id=account_number
            )
        return session

    def logout(self, session_id: str) -> bool:
        return self.sessions.invalidate(session_id)

    def authorize_transaction(self, account_number: str, pin: str) -> None:
        """
        Transaction-PIN gate for withdraw, transfer, loan and deletion actions

        Raises:
            AuthorizationError: Wrong PIN or locked transaction track
        """
        self._verify_track(account_number, LockTrack.TRANSACTION, pin)

    def change_transaction_pin(self, account_number: str, current_pin: str, new_pin: str) -> None:
        self.authorize_transaction(account_number, current_pin)
        self._set_secret(account_number, LockTrack.TRANSACTION, new_pin)

    def reset_login_secret(self, account_number: str, otp_code: str, new_secret: str) -> None:
        """Set a new login secret after OTP verification; clears the login lock"""
        self._load(account_number)
        if not self.otp_store.verify(account_number, otp_code):
            raise AuthorizationError("Invalid or expired OTP")
        self._set_secret(account_number, LockTrack.LOGIN, new_secret)
        self.lockout.reset(account_number, LockTrack.LOGIN, actor=account_number)

    def request_pin_reset(self, account_number: str, contact: str) -> str:
        """
        Send a PIN-reset OTP once the caller proves they know the registered
        email or phone number

        Raises:
            NotFoundError: Unknown account
            AuthorizationError: Account is deleted
            ValidationError: Contact missing or not on record
        """
        record = self._load(account_number)
        if record.get('is_deleted') or record.get('status') == 'DELETED':
            raise AuthorizationError("Account is deleted")
        contact = (contact or "").strip()
        if not contact:
            raise ValidationError("Registered email or phone number is required")
        if contact.lower() != (record.get('email') or "").lower() and contact != record.get('phone_number'):
            raise ValidationError("Contact does not match our records")
        return self.request_otp(account_number, record.get('email'), record.get('phone_number'))

    def reset_transaction_pin(self, account_number: str, otp_code: str, new_pin: str) -> None:
        """Set a new transaction PIN after OTP verification; clears the transaction lock"""
        record = self._load(account_number)
        if record.get('is_deleted') or record.get('status') == 'DELETED':
            raise AuthorizationError("Account is deleted")
        new_pin = validate_pin(new_pin, "Transaction PIN")
        if not self.otp_store.verify(account_number, otp_code):
            raise AuthorizationError("Invalid or expired OTP")
        self._set_secret(account_number, LockTrack.TRANSACTION, new_pin)
        self.lockout.reset(account_number, LockTrack.TRANSACTION, actor=account_number)

    def _set_secret(self, account_number: str, track: LockTrack, secret: str) -> None:
        self.storage.update(self.table_name, account_number, {
            SECRET_FIELDS[track]: self.verifier.hash(secret),
            'updated_at': datetime.now(timezone.utc).isoformat()
        })
        if self.audit_trail:
            self.audit_trail.try_log_event(
                AuditEventType.SECRET_CHANGED, "account", account_number,
                {"track": track.value}, user_id=account_number
            )

    def unlock(self, account_number: str, track: LockTrack, admin_session_id: str) -> None:
        admin = self.sessions.require_admin(admin_session_id)
        self._load(account_number)
        self.lockout.reset(account_number, track, actor=admin.principal)

    # OTP

    def request_otp(self, identifier: str, email: Optional[str] = None,
                    phone: Optional[str] = None) -> str:
        """
        Issue an OTP and hand it to the notifier. Delivery failure does not
        invalidate the code.

        Returns:
            The issued code
        """
        code = self.otp_store.issue(identifier)
        if self.notifier:
            expiry_minutes = self.otp_store.expiry_seconds // 60
            if email:
                self.notifier.notify("otp", email, code=code, expiry_minutes=expiry_minutes)
            if phone:
                self.notifier.notify("otp_sms", phone, channel=NotificationChannel.SMS,
                                     code=code, expiry_minutes=expiry_minutes)
        if self.audit_trail:
            self.audit_trail.try_log_event(AuditEventType.OTP_ISSUED, "otp", identifier)
        return code

    def request_account_otp(self, account_number: str) -> str:
        record = self._load(account_number)
        return self.request_otp(account_number, record.get('email'), record.get('phone_number'))

    def verify_otp(self, identifier: str, code: str) -> bool:
        return self.otp_store.verify(identifier, code)

    # Administrators

    def create_admin(self, username: str, password: str, email: Optional[str] = None) -> None:
        if not username or not username.strip():
            raise ValidationError("Admin username is required")
        username = username.strip()
        if self.storage.exists(self.admin_table, username):
            raise ConflictError(f"Admin {username} already exists")
        now = datetime.now(timezone.utc).isoformat()
        self.storage.save(self.admin_table, username, {
            'id': username,
            'username': username,
            'email': email,
            'password_hash': self.verifier.hash(password),
            'created_at': now,
            'updated_at': now,
        })
        if self.audit_trail:
            self.audit_trail.try_log_event(AuditEventType.ADMIN_CREATED, "admin", username)

    def admin_login(self, username: str, password: str) -> Session:
        record = self.storage.load(self.admin_table, username or "")
        result = self.verifier.verify(password, record['password_hash']) if record else None
        if not result:
            log_action(self.logger, "warning", "Admin login failed", user_id=username,
                       action="admin_login")
            raise AuthorizationError("Invalid admin credentials")
        if result.needs_migration:
            self.storage.update(self.admin_table, username,
                                {'password_hash': self.verifier.hash(password)})
        return self.sessions.create(username, SessionRole.ADMIN)

    def _require_admin_record(self, username: str) -> Dict[str, Any]:
        record = self.storage.load(self.admin_table, (username or "").strip())
        if record is None:
            raise NotFoundError(f"Admin {username} not found")
        return record

    def list_admins(self, admin_session_id: str) -> List[Dict[str, Any]]:
        """Admin records without password hashes, oldest first"""
        self.sessions.require_admin(admin_session_id)
        admins = [
            {k: v for k, v in record.items() if k != 'password_hash'}
            for record in self.storage.load_all(self.admin_table)
        ]
        admins.sort(key=lambda a: a['created_at'])
        return admins

    def update_admin(self, username: str, admin_session_id: str, email: Optional[str] = None,
                     phone_number: Optional[str] = None) -> Dict[str, Any]:
        """
        Change an admin's contact details. Only the default admin may do this.

        Raises:
            AuthorizationError: Caller is not the default admin
            ValidationError: Neither field given, or a malformed one
            NotFoundError: Unknown admin
        """
        acting = self.sessions.require_admin(admin_session_id)
        if acting.principal != self.default_admin:
            raise AuthorizationError(f"Only {self.default_admin} can update admin contact details")
        changes: Dict[str, Any] = {}
        if email is not None and email.strip():
            changes['email'] = validate_email(email)
        if phone_number is not None and phone_number.strip():
            changes['phone_number'] = validate_phone(phone_number)
        if not changes:
            raise ValidationError("Email or phone number is required")

        record = self._require_admin_record(username)
        changes['updated_at'] = datetime.now(timezone.utc).isoformat()
        self.storage.update(self.admin_table, record['id'], changes)
        if self.audit_trail:
            self.audit_trail.try_log_event(
                AuditEventType.ADMIN_UPDATED, "admin", record['id'],
                {k: v for k, v in changes.items() if k != 'updated_at'}, user_id=acting.principal
            )
        record.update(changes)
        record.pop('password_hash', None)
        return record

    def delete_admin(self, username: str, admin_session_id: str) -> None:
        """
        Raises:
            ValidationError: Deleting yourself or the default admin
            NotFoundError: Unknown admin
        """
        acting = self.sessions.require_admin(admin_session_id)
        username = (username or "").strip()
        if username == self.default_admin:
            raise ValidationError(f"The default {self.default_admin} account cannot be deleted")
        if username == acting.principal:
            raise ValidationError("You cannot delete your own admin account")
        self._require_admin_record(username)
        self.storage.delete(self.admin_table, username)
        log_action(self.logger, "warning", "Admin deleted", user_id=acting.principal,
                   action="delete_admin", resource=f"admin:{username}")
        if self.audit_trail:
            self.audit_trail.try_log_event(AuditEventType.ADMIN_DELETED, "admin", username,
                                           user_id=acting.principal)
