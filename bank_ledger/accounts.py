"""
Account Management Module

Account records and their lifecycle: creation with KYC validation,
customer soft-delete, admin restore and admin purge. Balances are only
changed through the ledger and loan modules.
"""

import secrets
from decimal import Decimal
from datetime import date, datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union
from enum import Enum

from .audit import AuditTrail, AuditEventType
from .credentials import CredentialVerifier
from .errors import (
    ConflictError, NotFoundError, StateError, ValidationError
)
from .locks import AccountLockRegistry
from .lockout import LockoutTracker, LockTrack, TrackState
from .logging_config import get_logger, log_action
from .money import ZERO, format_amount, to_amount
from .notifications import Notifier
from .security import AccountSecurity
from .sessions import SessionManager
from .storage import StorageInterface, StorageRecord
from .transactions import TransactionLog, TransactionType
from . import validation


class AccountType(Enum):
    SAVINGS = "SAVINGS"
    CURRENT = "CURRENT"
    STUDENT = "STUDENT"


class AccountStatus(Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    DELETED = "DELETED"


@dataclass
class Account(StorageRecord):
    """
    Customer account: identity, KYC, balance, security state, lifecycle
    flags and the metadata of at most one loan.
    """
    account_number: str
    holder_name: str
    email: str
    phone_number: str
    gender: str
    address: str
    date_of_birth: date
    branch: str
    ifsc_code: str
    government_id_type: str
    government_id_number: str
    account_type: AccountType
    balance: Decimal
    login_secret_hash: str
    transaction_secret_hash: str
    government_id_proof: Optional[str] = None
    login_lock: TrackState = TrackState()
    transaction_lock: TrackState = TrackState()
    status: AccountStatus = AccountStatus.ACTIVE
    deletion_requested: bool = False
    is_deleted: bool = False
    last_activity: Optional[datetime] = None
    # Loan metadata
    has_loan: bool = False
    loan_amount: Decimal = ZERO
    loan_interest_rate: Decimal = ZERO
    loan_total_due: Decimal = ZERO
    loan_taken_date: Optional[datetime] = None
    loan_last_paid_date: Optional[datetime] = None
    loan_type: Optional[str] = None
    emi_plan: Optional[str] = None
    auto_repayment_enabled: bool = False

    @property
    def age(self) -> int:
        return validation.calculate_age(self.date_of_birth)

    @property
    def is_operable(self) -> bool:
        return self.status != AccountStatus.DELETED and not self.is_deleted

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['date_of_birth'] = self.date_of_birth.isoformat()
        result['account_type'] = self.account_type.value
        result['status'] = self.status.value
        result['login_lock'] = self.login_lock.to_dict()
        result['transaction_lock'] = self.transaction_lock.to_dict()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Account':
        data = dict(data)
        data['date_of_birth'] = date.fromisoformat(data['date_of_birth'])
        data['account_type'] = AccountType(data['account_type'])
        data['status'] = AccountStatus(data['status'])
        data['login_lock'] = TrackState.from_dict(data.get('login_lock'))
        data['transaction_lock'] = TrackState.from_dict(data.get('transaction_lock'))
        for key in ('balance', 'loan_amount', 'loan_interest_rate', 'loan_total_due'):
            data[key] = Decimal(data[key]) if data.get(key) is not None else ZERO
        for key in ('last_activity', 'loan_taken_date', 'loan_last_paid_date'):
            if data.get(key):
                data[key] = datetime.fromisoformat(data[key])
        return super().from_dict(data)

    def to_summary(self) -> Dict[str, Any]:
        """Public view without secrets"""
        return {
            'account_number': self.account_number,
            'holder_name': self.holder_name,
            'email': self.email,
            'phone_number': self.phone_number,
            'branch': self.branch,
            'ifsc_code': self.ifsc_code,
            'account_type': self.account_type.value,
            'balance': str(self.balance),
            'status': self.status.value,
            'age': self.age,
            'has_loan': self.has_loan,
            'loan_total_due': str(self.loan_total_due),
            'deletion_requested': self.deletion_requested,
            'login_locked': self.login_lock.is_locked,
            'transaction_locked': self.transaction_lock.is_locked,
            'created_at': self.created_at.isoformat(),
        }


LOAN_FIELDS_CLEARED = {
    'has_loan': False,
    'loan_amount': str(ZERO),
    'loan_interest_rate': str(ZERO),
    'loan_total_due': str(ZERO),
    'loan_taken_date': None,
    'loan_type': None,
    'emi_plan': None,
    'auto_repayment_enabled': False,
}


def parse_account_type(value: Union[str, AccountType]) -> AccountType:
    if isinstance(value, AccountType):
        return value
    try:
        return AccountType(str(value).strip().upper())
    except ValueError:
        raise ValidationError(f"Unknown account type: {value}")


def generate_account_number() -> str:
    """11 digits, first digit 1-9"""
    return str(secrets.randbelow(9) + 1) + "".join(secrets.choice("0123456789") for _ in range(10))


class AccountManager:
    """
    Creates and looks up accounts and drives their lifecycle states
    """

    def __init__(
        self,
        storage: StorageInterface,
        verifier: CredentialVerifier,
        lockout: LockoutTracker,
        transaction_log: TransactionLog,
        audit_trail: AuditTrail,
        locks: Optional[AccountLockRegistry] = None,
        security: Optional[AccountSecurity] = None,
        sessions: Optional[SessionManager] = None,
        notifier: Optional[Notifier] = None,
        min_opening_balances: Optional[Dict[AccountType, Decimal]] = None,
        student_age_limit: int = 18
    ):
        self.storage = storage
        self.verifier = verifier
        self.lockout = lockout
        self.transaction_log = transaction_log
        self.audit_trail = audit_trail
        self.locks = locks or transaction_log.locks
        self.security = security
        self.sessions = sessions
        self.notifier = notifier
        self.min_opening_balances = min_opening_balances or {
            AccountType.SAVINGS: Decimal("1000.00"),
            AccountType.CURRENT: Decimal("1000.00"),
            AccountType.STUDENT: ZERO,
        }
        self.student_age_limit = student_age_limit
        self.table_name = "accounts"
        self.logger = get_logger("bank_ledger.accounts")

    # Creation

    def create_account(
        self,
        holder_name: str,
        email: str,
        phone_number: str,
        gender: str,
        address: str,
        date_of_birth: Union[str, date],
        branch: str,
        government_id_type: str,
        government_id_number: str,
        login_secret: str,
        initial_deposit: Union[str, int, Decimal] = "0",
        account_type: Union[str, AccountType] = AccountType.SAVINGS,
        transaction_pin: Optional[str] = None,
        government_id_proof: Optional[str] = None,
        today: Optional[date] = None
    ) -> Tuple[Account, Optional[str]]:
        """
        Open a new account

        Args:
            holder_name .. government_id_number: KYC and contact fields
            login_secret: Login PIN or password (stored hashed)
            initial_deposit: Opening balance
            account_type: SAVINGS, CURRENT or STUDENT (forced to STUDENT under the age limit)
            transaction_pin: 4-digit PIN; generated when omitted
            government_id_proof: Reference to the uploaded proof document

        Returns:
            (account, generated transaction PIN or None when one was supplied)

        Raises:
            ValidationError: Bad field, unknown branch or deposit below the minimum
            ConflictError: Government ID already registered
        """
        holder_name = validation.validate_name(holder_name)
        email = validation.validate_email(email)
        phone_number = validation.validate_phone(phone_number)
        gender = validation.validate_gender(gender)
        address = validation.validate_address(address)
        dob = validation.parse_date(date_of_birth)
        age = validation.calculate_age(dob, today)
        branch_name = validation.canonical_branch(branch)
        ifsc_code = validation.ifsc_for_branch(branch_name)
        id_type, id_number = validation.validate_government_id(government_id_type, government_id_number)
        if not login_secret:
            raise ValidationError("Login secret is required")

        kind = parse_account_type(account_type)
        if age < self.student_age_limit:
            kind = AccountType.STUDENT

        deposit = to_amount(initial_deposit)
        if deposit < ZERO:
            raise ValidationError("Opening deposit cannot be negative")
        minimum = self.min_opening_balances[kind]
        if deposit < minimum:
            raise ValidationError(
                f"Minimum opening balance for {kind.value} accounts is {format_amount(minimum)}"
            )

        generated_pin = None
        if transaction_pin:
            transaction_pin = validation.validate_pin(transaction_pin, "Transaction PIN")
        else:
            transaction_pin = generated_pin = self.verifier.generate_pin()

        if self.find_by_government_id(id_number):
            raise ConflictError("An account with this government ID already exists")

        account_number = generate_account_number()
        while self.storage.exists(self.table_name, account_number):
            account_number = generate_account_number()

        now = datetime.now(timezone.utc)
        account = Account(
            id=account_number,
            created_at=now,
            updated_at=now,
            account_number=account_number,
            holder_name=holder_name,
            email=email,
            phone_number=phone_number,
            gender=gender,
            address=address,
            date_of_birth=dob,
            branch=branch_name,
            ifsc_code=ifsc_code,
            government_id_type=id_type,
            government_id_number=id_number,
            government_id_proof=government_id_proof,
            account_type=kind,
            balance=ZERO,
            login_secret_hash=self.verifier.hash(login_secret),
            transaction_secret_hash=self.verifier.hash(transaction_pin),
            last_activity=now
        )
        self.storage.save(self.table_name, account_number, account.to_dict())

        if deposit > ZERO:
            opening = self.transaction_log.new_transaction(
                TransactionType.DEPOSIT, deposit, to_account=account_number, category="Account Opening"
            )
            self.transaction_log.balances.credit(account_number, deposit)
            self.transaction_log.record(opening)
            account.balance = deposit

        log_action(
            self.logger, "info", "Account created",
            user_id=account_number, action="create_account", resource=f"account:{account_number}",
            extra={"account_type": kind.value, "branch": branch_name, "opening_balance": str(deposit)}
        )
        self.audit_trail.try_log_event(
            AuditEventType.ACCOUNT_CREATED, "account", account_number,
            {"account_type": kind, "branch": branch_name, "opening_balance": deposit}
        )
        if self.notifier:
            self.notifier.notify(
                "account_opened", email,
                holder_name=holder_name, account_type=kind.value, account_number=account_number,
                branch=branch_name, ifsc_code=ifsc_code, balance=format_amount(deposit),
                pin_line=f"Your transaction PIN is {generated_pin}." if generated_pin else ""
            )
        return account, generated_pin

    # Lookup

    def get_account(self, account_number: str) -> Optional[Account]:
        data = self.storage.load(self.table_name, account_number) if account_number else None
        return Account.from_dict(data) if data else None

    def require_account(self, account_number: str) -> Account:
        account = self.get_account(account_number)
        if account is None:
            raise NotFoundError(f"Account {account_number} not found")
        return account

    def require_operable(self, account_number: str) -> Account:
        account = self.require_account(account_number)
        if not account.is_operable:
            raise StateError(f"Account {account_number} is deleted")
        return account

    def exists(self, account_number: str) -> bool:
        return self.storage.exists(self.table_name, account_number)

    def find_by_government_id(self, government_id_number: str) -> Optional[Account]:
        matches = self.storage.find(self.table_name,
                                    {'government_id_number': government_id_number.strip().upper()})
        return Account.from_dict(matches[0]) if matches else None

    def list_accounts(self, include_deleted: bool = True) -> List[Account]:
        accounts = [Account.from_dict(d) for d in self.storage.load_all(self.table_name)]
        if not include_deleted:
            accounts = [a for a in accounts if a.is_operable]
        accounts.sort(key=lambda a: a.created_at)
        return accounts

    def list_locked(self) -> List[Account]:
        """Accounts with the login or the transaction track locked"""
        return [a for a in self.list_accounts()
                if a.login_lock.is_locked or a.transaction_lock.is_locked]

    def update_fields(self, account_number: str, changes: Dict[str, Any]) -> None:
        """Merge lifecycle or loan fields into the stored account"""
        changes = dict(changes)
        changes['updated_at'] = datetime.now(timezone.utc).isoformat()
        if not self.storage.update(self.table_name, account_number, changes):
            raise NotFoundError(f"Account {account_number} not found")

    def lock_all_tracks(self, account_number: str, actor: Optional[str] = None) -> None:
        for track in LockTrack:
            self.lockout.force_lock(account_number, track, actor=actor)

    # Customer details

    def update_contact(self, account_number: str, email: str, phone_number: str,
                       admin_session_id: str) -> Account:
        """
        Admin action: replace both contact fields

        Raises:
            ValidationError: Malformed email or phone number
            StateError: Account is deleted
        """
        admin = self.sessions.require_admin(admin_session_id)
        email = validation.validate_email(email)
        phone_number = validation.validate_phone(phone_number)
        with self.locks.acquire(account_number):
            self.require_operable(account_number)
            self.update_fields(account_number, {'email': email, 'phone_number': phone_number})

        log_action(
            self.logger, "info", "Contact details updated",
            user_id=admin.principal, action="update_contact", resource=f"account:{account_number}"
        )
        self.audit_trail.try_log_event(
            AuditEventType.CONTACT_UPDATED, "account", account_number,
            {"email": email, "phone_number": phone_number}, user_id=admin.principal
        )
        return self.require_account(account_number)

    def update_details(
        self,
        account_number: str,
        admin_session_id: str,
        holder_name: Optional[str] = None,
        address: Optional[str] = None,
        gender: Optional[str] = None,
        account_type: Optional[Union[str, AccountType]] = None
    ) -> Account:
        """
        Admin action: change any of holder name, address, gender and
        account type. Omitted fields keep their value.

        Raises:
            ValidationError: Nothing to change, a malformed field, or moving
                an under-age holder off STUDENT
            StateError: Account is deleted
        """
        admin = self.sessions.require_admin(admin_session_id)
        changes: Dict[str, Any] = {}
        if holder_name is not None:
            changes['holder_name'] = validation.validate_name(holder_name)
        if address is not None:
            changes['address'] = validation.validate_address(address)
        if gender is not None:
            changes['gender'] = validation.validate_gender(gender)
        kind = None
        if account_type is not None:
            kind = parse_account_type(account_type)
            changes['account_type'] = kind.value
        if not changes:
            raise ValidationError("No details to update")

        with self.locks.acquire(account_number):
            account = self.require_operable(account_number)
            if kind not in (None, AccountType.STUDENT) and account.age < self.student_age_limit:
                raise ValidationError(
                    f"Holders under {self.student_age_limit} must keep a STUDENT account"
                )
            self.update_fields(account_number, changes)

        log_action(
            self.logger, "info", "Customer details updated",
            user_id=admin.principal, action="update_details", resource=f"account:{account_number}",
            extra={"fields": sorted(changes)}
        )
        self.audit_trail.try_log_event(
            AuditEventType.DETAILS_UPDATED, "account", account_number,
            changes, user_id=admin.principal
        )
        return self.require_account(account_number)

    # Lifecycle

    def soft_delete(
        self,
        session_id: str,
        account_number: str,
        holder_name: str,
        ifsc_code: str,
        contact: str,
        transaction_pin: str
    ) -> Account:
        """
        Customer self-service deletion. Holder name, IFSC, contact (email or
        phone) and transaction PIN must all match, and the session must be
        bound to the same account.

        Raises:
            AuthorizationError: Session mismatch or wrong PIN
            ValidationError: Holder name, IFSC or contact do not match
            StateError: Already deleted or a loan is still active
        """
        self.sessions.require_account_session(session_id, account_number)
        account = self.require_operable(account_number)

        contact = (contact or "").strip()
        details_match = (
            (holder_name or "").strip().lower() == account.holder_name.lower()
            and (ifsc_code or "").strip().upper() == account.ifsc_code.upper()
            and contact != ""
            and (contact.lower() == account.email.lower() or contact == account.phone_number)
        )
        if not details_match:
            raise ValidationError("Account details do not match our records")

        self.security.authorize_transaction(account_number, transaction_pin)
        if account.has_loan:
            raise StateError("Close the active loan before deleting the account")

        self.update_fields(account_number, {
            'status': AccountStatus.DELETED.value,
            'is_deleted': True,
            'deletion_requested': False,
        })
        self.lock_all_tracks(account_number, actor=account_number)
        self.sessions.invalidate_for_account(account_number)

        log_action(
            self.logger, "info", "Account soft-deleted by holder",
            user_id=account_number, action="soft_delete", resource=f"account:{account_number}"
        )
        self.audit_trail.try_log_event(
            AuditEventType.ACCOUNT_SOFT_DELETED, "account", account_number,
            {"by": "holder"}, user_id=account_number,
        )
        return self.require_account(account_number)

    def restore(self, account_number: str, admin_session_id: str) -> Account:
        """Admin action: back to ACTIVE with both tracks unlocked"""
        admin = self.sessions.require_admin(admin_session_id)
        self.require_account(account_number)
        self.update_fields(account_number, {
            'status': AccountStatus.ACTIVE.value,
            'is_deleted': False,
            'deletion_requested': False,
        })
        for track in LockTrack:
            self.lockout.reset(account_number, track, actor=admin.principal)

        log_action(
            self.logger, "info", "Account restored",
            user_id=admin.principal, action="restore_account", resource=f"account:{account_number}"
        )
        self.audit_trail.try_log_event(
            AuditEventType.ACCOUNT_RESTORED, "account", account_number, {}, user_id=admin.principal
        )
        return self.require_account(account_number)

    def deactivate(self, account_number: str, admin_session_id: str) -> Account:
        """Admin action: mark a dormant account INACTIVE; the next deposit reactivates it"""
        admin = self.sessions.require_admin(admin_session_id)
        account = self.require_operable(account_number)
        if account.status == AccountStatus.INACTIVE:
            raise StateError(f"Account {account_number} is already inactive")
        self.update_fields(account_number, {'status': AccountStatus.INACTIVE.value})
        log_action(
            self.logger, "info", "Account marked inactive",
            user_id=admin.principal, action="deactivate_account", resource=f"account:{account_number}"
        )
        self.audit_trail.record("ACCOUNT_DEACTIVATED", f"Account {account_number} marked inactive",
                                actor=admin.principal, entity_type="account", entity_id=account_number)
        return self.require_account(account_number)

    def purge(self, account_number: str, admin_session_id: str) -> bool:
        """
        Admin physical delete. Any remaining balance is paid out and recorded
        as an ACCOUNT_CLOSED transaction first.

        Raises:
            StateError: A loan is still active, or the closing transaction
                was rejected (the account is kept)
        """
        admin = self.sessions.require_admin(admin_session_id)
        with self.locks.acquire(account_number):
            account = self.require_account(account_number)
            if account.has_loan:
                raise StateError("Cannot delete an account with an active loan")

            if account.balance > ZERO:
                closing = self.transaction_log.new_transaction(
                    TransactionType.ACCOUNT_CLOSED, account.balance,
                    from_account=account_number, category="Account Closed"
                )
                if not self.transaction_log.record(closing):
                    raise StateError("Closing transaction was rejected; account not deleted")

            deleted = self.storage.delete(self.table_name, account_number)
        self.sessions.invalidate_for_account(account_number)
        log_action(
            self.logger, "warning", "Account purged",
            user_id=admin.principal, action="purge_account", resource=f"account:{account_number}",
            extra={"closing_balance": str(account.balance)}
        )
        self.audit_trail.try_log_event(
            AuditEventType.ACCOUNT_PURGED, "account", account_number,
            {"closing_balance": account.balance}, user_id=admin.principal
        )
        return deleted
