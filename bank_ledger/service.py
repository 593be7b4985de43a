"""
Banking Core Facade

Wires the ledger components together from configuration and exposes the
operations an outer layer (HTTP, CLI) calls. Every operation returns an
OperationResult; business errors never escape as exceptions.
"""

from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Union

from .accounts import AccountManager, AccountType
from .audit import AuditTrail
from .balances import BalanceBook
from .config import LedgerConfig, get_config
from .credentials import CredentialVerifier
from .dedupe import DuplicateRequestGuard
from .deletion import DeletionManager
from .errors import (
    ConflictError, InsufficientBalanceForRollbackError, NotFoundError,
    OperationResult, StateError, result_boundary
)
from .ledger import Ledger
from .locks import AccountLockRegistry
from .lockout import LockoutTracker, LockTrack
from .loans import LoanManager, calculate_emi
from .logging_config import get_logger, setup_logging
from .money import to_amount, to_positive_amount
from .notifications import (
    LogNotificationGateway, NotificationGateway, Notifier, WebhookNotificationGateway
)
from .otp import OTPChallengeStore
from .reporting import ReportRenderer
from .security import AccountSecurity
from .sessions import SessionManager
from .storage import InMemoryStorage, StorageInterface, create_storage
from .transactions import REVERSIBLE_TYPES, Transaction, TransactionLog
from .validation import validate_account_number, validate_ifsc, validate_pin


def _transaction_view(transaction: Transaction) -> Dict[str, Any]:
    data = transaction.to_dict()
    return {k: data[k] for k in (
        'id', 'transaction_type', 'amount', 'from_account', 'to_account',
        'category', 'status', 'created_at', 'rolled_back_by'
    )}


class BankingCore:
    """Core banking system with all components initialized"""

    def __init__(
        self,
        settings: Optional[LedgerConfig] = None,
        storage: Optional[StorageInterface] = None,
        gateway: Optional[NotificationGateway] = None,
        otp_clock: Optional[Callable[[], float]] = None,
        guard_clock: Optional[Callable[[], float]] = None
    ):
        self.settings = settings or get_config()
        s = self.settings
        self.logger = get_logger("bank_ledger.service")

        self.storage = storage or create_storage(s.database_url)
        self.audit_trail = AuditTrail(self.storage, enabled=s.enable_audit_logging)
        self.locks = AccountLockRegistry()
        self.balances = BalanceBook(self.storage, self.locks)
        self.verifier = CredentialVerifier()
        self.lockout = LockoutTracker(
            self.storage, self.locks, self.audit_trail,
            login_threshold=s.login_max_failed_attempts,
            transaction_threshold=s.transaction_pin_max_failed_attempts
        )

        otp_kwargs = {'clock': otp_clock} if otp_clock else {}
        self.otp_store = OTPChallengeStore(s.otp_length, s.otp_expiry_minutes, **otp_kwargs)
        guard_kwargs = {'clock': guard_clock} if guard_clock else {}
        self.guard = DuplicateRequestGuard(s.duplicate_window_seconds, **guard_kwargs)

        if gateway is None:
            if s.notification_webhook_url:
                gateway = WebhookNotificationGateway(
                    s.notification_webhook_url, s.notification_timeout, s.notification_sender
                )
            else:
                gateway = LogNotificationGateway()
        self.gateway = gateway
        self.notifier = Notifier(gateway, self.storage, enabled=s.notifications_enabled)

        self.sessions = SessionManager(self.storage, s.session_timeout_minutes)
        self.security = AccountSecurity(
            self.storage, self.verifier, self.lockout, self.sessions,
            self.otp_store, self.notifier, self.audit_trail,
            default_admin=s.default_admin_username
        )
        self.transaction_log = TransactionLog(
            self.storage, self.balances, self.locks, self.lockout, self.audit_trail
        )
        self.accounts = AccountManager(
            self.storage, self.verifier, self.lockout, self.transaction_log, self.audit_trail,
            locks=self.locks,
            security=self.security,
            sessions=self.sessions,
            notifier=self.notifier,
            min_opening_balances={
                AccountType.SAVINGS: to_amount(s.min_opening_balance_savings),
                AccountType.CURRENT: to_amount(s.min_opening_balance_current),
                AccountType.STUDENT: to_amount(s.min_opening_balance_student),
            },
            student_age_limit=s.student_age_limit
        )
        self.ledger = Ledger(
            self.accounts, self.balances, self.transaction_log, self.lockout, self.locks,
            self.audit_trail, self.notifier, min_debit_amount=to_amount(s.min_debit_amount)
        )
        self.loans = LoanManager(
            self.storage, self.accounts, self.balances, self.transaction_log, self.locks,
            self.audit_trail, self.notifier,
            min_balance_ratio=Decimal(s.loan_min_balance_ratio),
            review_min_balance=to_amount(s.loan_review_min_balance),
            review_min_deposits=to_amount(s.loan_review_min_deposits),
            review_months=s.loan_review_months
        )
        self.deletions = DeletionManager(
            self.storage, self.accounts, self.sessions, self.locks, self.audit_trail, self.notifier
        )
        self.reports = ReportRenderer(s.report_kdf_iterations)

    @classmethod
    def from_config(cls, settings: Optional[LedgerConfig] = None) -> 'BankingCore':
        """Build from configuration and install logging handlers"""
        settings = settings or get_config()
        setup_logging(settings.log_level, log_format=settings.log_format, log_file=settings.log_file)
        return cls(settings)

    @classmethod
    def for_testing(cls, **kwargs) -> 'BankingCore':
        """In-memory storage and a log-only gateway"""
        settings = kwargs.pop('settings', None) or LedgerConfig(database_url="memory://")
        kwargs.setdefault('gateway', LogNotificationGateway())
        return cls(settings, storage=InMemoryStorage(), **kwargs)

    def close(self) -> None:
        self.storage.close()

    def _check_duplicate(self, operation: str, *accounts: Optional[str], amount: Decimal,
                         client_request_id: Optional[str] = None) -> None:
        key = DuplicateRequestGuard.build_key(operation, *accounts, amount=amount,
                                              client_request_id=client_request_id)
        if self.guard.seen(key):
            raise ConflictError("Duplicate request detected. Please wait before retrying.")

    # Accounts

    @result_boundary
    def open_account(self, **details) -> OperationResult:
        """Keyword arguments are those of AccountManager.create_account"""
        account, generated_pin = self.accounts.create_account(**details)
        data = {'account': account.to_summary()}
        if generated_pin:
            data['transaction_pin'] = generated_pin
        return OperationResult.ok(f"Account {account.account_number} created", **data)

    @result_boundary
    def get_account(self, session_id: str, account_number: str) -> OperationResult:
        self.sessions.require_account_session(session_id, account_number)
        account = self.accounts.require_account(account_number)
        return OperationResult.ok("Account found", account=account.to_summary())

    @result_boundary
    def find_account_by_government_id(self, admin_session_id: str,
                                      government_id_number: str) -> OperationResult:
        self.sessions.require_admin(admin_session_id)
        account = self.accounts.find_by_government_id(government_id_number)
        if account is None:
            raise NotFoundError("No account with this government ID")
        return OperationResult.ok("Account found", account=account.to_summary())

    @result_boundary
    def list_accounts(self, admin_session_id: str, include_deleted: bool = True) -> OperationResult:
        self.sessions.require_admin(admin_session_id)
        accounts = self.accounts.list_accounts(include_deleted)
        return OperationResult.ok(f"{len(accounts)} account(s)",
                                  accounts=[a.to_summary() for a in accounts])

    @result_boundary
    def soft_delete_account(self, session_id: str, account_number: str, holder_name: str,
                            ifsc_code: str, contact: str, transaction_pin: str) -> OperationResult:
        self.accounts.soft_delete(session_id, account_number, holder_name, ifsc_code,
                                  contact, transaction_pin)
        return OperationResult.ok("Account deleted")

    @result_boundary
    def restore_account(self, admin_session_id: str, account_number: str) -> OperationResult:
        account = self.accounts.restore(account_number, admin_session_id)
        return OperationResult.ok("Account restored", account=account.to_summary())

    @result_boundary
    def deactivate_account(self, admin_session_id: str, account_number: str) -> OperationResult:
        account = self.accounts.deactivate(account_number, admin_session_id)
        return OperationResult.ok("Account marked inactive", account=account.to_summary())

    @result_boundary
    def purge_account(self, admin_session_id: str, account_number: str) -> OperationResult:
        self.accounts.purge(account_number, admin_session_id)
        return OperationResult.ok(f"Account {account_number} permanently deleted")

    @result_boundary
    def list_locked_accounts(self, admin_session_id: str) -> OperationResult:
        self.sessions.require_admin(admin_session_id)
        accounts = self.accounts.list_locked()
        return OperationResult.ok(f"{len(accounts)} locked account(s)",
                                  accounts=[a.to_summary() for a in accounts])

    @result_boundary
    def update_contact(self, admin_session_id: str, account_number: str, email: str,
                       phone_number: str) -> OperationResult:
        account = self.accounts.update_contact(validate_account_number(account_number),
                                               email, phone_number, admin_session_id)
        return OperationResult.ok("Contact details updated", account=account.to_summary())

    @result_boundary
    def update_customer_details(self, admin_session_id: str, account_number: str,
                                **changes) -> OperationResult:
        """Keyword arguments: holder_name, address, gender, account_type"""
        account = self.accounts.update_details(validate_account_number(account_number),
                                               admin_session_id, **changes)
        return OperationResult.ok("Customer details updated", account=account.to_summary())

    # Authentication

    @result_boundary
    def login(self, account_number: str, secret: str) -> OperationResult:
        validate_account_number(account_number)
        session = self.security.login(account_number, secret)
        return OperationResult.ok("Login successful", session_id=session.id,
                                  expires_at=session.expires_at.isoformat())

    @result_boundary
    def logout(self, session_id: str) -> OperationResult:
        if not self.security.logout(session_id):
            raise NotFoundError("Session not found")
        return OperationResult.ok("Logged out")

    @result_boundary
    def create_admin(self, username: str, password: str, email: Optional[str] = None) -> OperationResult:
        self.security.create_admin(username, password, email)
        return OperationResult.ok(f"Admin {username} created")

    @result_boundary
    def admin_login(self, username: str, password: str) -> OperationResult:
        session = self.security.admin_login(username, password)
        return OperationResult.ok("Login successful", session_id=session.id)

    @result_boundary
    def list_admins(self, admin_session_id: str) -> OperationResult:
        admins = self.security.list_admins(admin_session_id)
        return OperationResult.ok(f"{len(admins)} admin(s)", admins=admins)

    @result_boundary
    def update_admin(self, admin_session_id: str, username: str, email: Optional[str] = None,
                     phone_number: Optional[str] = None) -> OperationResult:
        admin = self.security.update_admin(username, admin_session_id, email, phone_number)
        return OperationResult.ok(f"Admin {username} updated", admin=admin)

    @result_boundary
    def delete_admin(self, admin_session_id: str, username: str) -> OperationResult:
        self.security.delete_admin(username, admin_session_id)
        return OperationResult.ok(f"Admin {username} deleted")

    @result_boundary
    def request_otp(self, account_number: str) -> OperationResult:
        """The code is delivered out of band and never returned"""
        self.security.request_account_otp(validate_account_number(account_number))
        return OperationResult.ok("OTP sent")

    @result_boundary
    def verify_otp(self, identifier: str, code: str) -> OperationResult:
        if not self.security.verify_otp(identifier, code):
            return OperationResult.fail("Invalid or expired OTP", "authorization_error")
        return OperationResult.ok("OTP verified")

    @result_boundary
    def reset_login_secret(self, account_number: str, otp_code: str, new_secret: str) -> OperationResult:
        self.security.reset_login_secret(account_number, otp_code, new_secret)
        return OperationResult.ok("Login secret updated")

    @result_boundary
    def request_pin_reset(self, account_number: str, contact: str) -> OperationResult:
        """The code is delivered out of band and never returned"""
        self.security.request_pin_reset(validate_account_number(account_number), contact)
        return OperationResult.ok("OTP sent to your registered contact")

    @result_boundary
    def reset_transaction_pin(self, account_number: str, otp_code: str, new_pin: str) -> OperationResult:
        self.security.reset_transaction_pin(validate_account_number(account_number), otp_code, new_pin)
        return OperationResult.ok("Transaction PIN reset")

    @result_boundary
    def change_transaction_pin(self, account_number: str, current_pin: str, new_pin: str) -> OperationResult:
        self.security.change_transaction_pin(account_number, current_pin,
                                             validate_pin(new_pin, "Transaction PIN"))
        return OperationResult.ok("Transaction PIN updated")

    @result_boundary
    def unlock(self, admin_session_id: str, account_number: str,
               track: Union[str, LockTrack] = LockTrack.LOGIN) -> OperationResult:
        track = track if isinstance(track, LockTrack) else LockTrack(str(track).lower())
        self.security.unlock(account_number, track, admin_session_id)
        return OperationResult.ok(f"{track.value} track unlocked")

    # Money movement

    @result_boundary
    def deposit(self, account_number: str, amount: Union[str, int, Decimal],
                category: Optional[str] = None,
                client_request_id: Optional[str] = None) -> OperationResult:
        validate_account_number(account_number)
        amount = to_positive_amount(amount)
        self._check_duplicate("DEPOSIT", account_number, amount=amount,
                              client_request_id=client_request_id)
        transaction = self.ledger.deposit(account_number, amount, category)
        return OperationResult.ok(
            "Deposit successful", transaction=_transaction_view(transaction),
            balance=str(self.ledger.get_balance(account_number))
        )

    @result_boundary
    def withdraw(self, account_number: str, amount: Union[str, int, Decimal], pin: str,
                 category: Optional[str] = None,
                 client_request_id: Optional[str] = None) -> OperationResult:
        validate_account_number(account_number)
        amount = to_positive_amount(amount)
        self.security.authorize_transaction(account_number, pin)
        self._check_duplicate("WITHDRAW", account_number, amount=amount,
                              client_request_id=client_request_id)
        transaction = self.ledger.withdraw(account_number, amount, category)
        return OperationResult.ok(
            "Withdrawal successful", transaction=_transaction_view(transaction),
            balance=str(self.ledger.get_balance(account_number))
        )

    @result_boundary
    def transfer(self, from_account: str, to_account: str, amount: Union[str, int, Decimal],
                 pin: str, recipient_ifsc: str, category: Optional[str] = None,
                 client_request_id: Optional[str] = None) -> OperationResult:
        validate_account_number(from_account)
        validate_account_number(to_account)
        recipient_ifsc = validate_ifsc(recipient_ifsc)
        amount = to_positive_amount(amount)
        self.security.authorize_transaction(from_account, pin)
        self._check_duplicate("TRANSFER", from_account, to_account, amount=amount,
                              client_request_id=client_request_id)
        transaction = self.ledger.transfer(from_account, to_account, amount, recipient_ifsc, category)
        return OperationResult.ok(
            "Transfer successful", transaction=_transaction_view(transaction),
            balance=str(self.ledger.get_balance(from_account))
        )

    @result_boundary
    def get_balance(self, session_id: str, account_number: str) -> OperationResult:
        self.sessions.require_account_session(session_id, account_number)
        return OperationResult.ok("Balance", balance=str(self.ledger.get_balance(account_number)))

    @result_boundary
    def rollback_transaction(self, admin_session_id: str, transaction_id: str) -> OperationResult:
        admin = self.sessions.require_admin(admin_session_id)
        transaction = self.transaction_log.get_transaction(transaction_id)
        if transaction is None:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        if transaction.is_reversed:
            raise ConflictError(f"Transaction {transaction_id} is already reversed")
        if transaction.transaction_type not in REVERSIBLE_TYPES:
            raise StateError(f"{transaction.transaction_type.value} transactions cannot be rolled back")
        if not self.transaction_log.rollback(transaction_id, admin.principal):
            current = self.transaction_log.get_transaction(transaction_id)
            if current is not None and current.is_reversed:
                raise ConflictError(f"Transaction {transaction_id} is already reversed")
            missing = self.transaction_log.missing_endpoint(transaction)
            if missing:
                raise StateError(f"Account {missing} no longer exists; transaction cannot be rolled back")
            raise InsufficientBalanceForRollbackError(
                "Credited account no longer holds enough balance to reverse this transaction"
            )
        return OperationResult.ok(f"Transaction {transaction_id} rolled back")

    # History and reports

    @result_boundary
    def transaction_history(self, session_id: str, account_number: str,
                            limit: Optional[int] = None) -> OperationResult:
        self.sessions.require_account_session(session_id, account_number)
        transactions = self.transaction_log.list_for_account(account_number, limit)
        return OperationResult.ok(f"{len(transactions)} transaction(s)",
                                  transactions=[_transaction_view(t) for t in transactions])

    @result_boundary
    def all_transactions(self, admin_session_id: str) -> OperationResult:
        self.sessions.require_admin(admin_session_id)
        transactions = self.transaction_log.list_all()
        return OperationResult.ok(f"{len(transactions)} transaction(s)",
                                  transactions=[_transaction_view(t) for t in transactions])

    @result_boundary
    def filter_transactions(self, admin_session_id: str, **filters) -> OperationResult:
        """
        Keyword arguments are those of TransactionLog.filter_transactions:
        from_date, to_date, transaction_type, category, status,
        account_number, limit, offset
        """
        self.sessions.require_admin(admin_session_id)
        transactions = self.transaction_log.filter_transactions(**filters)
        return OperationResult.ok(f"{len(transactions)} transaction(s)",
                                  transactions=[_transaction_view(t) for t in transactions])

    @result_boundary
    def mini_statement(self, session_id: str, account_number: str,
                       format: Optional[str] = None, access_key: Optional[str] = None) -> OperationResult:
        """Last few transactions; rendered as a document when a format is given"""
        self.sessions.require_account_session(session_id, account_number)
        account = self.accounts.require_account(account_number)
        transactions = self.transaction_log.mini_statement(account_number,
                                                           self.settings.mini_statement_size)
        data = {
            'balance': str(account.balance),
            'transactions': [_transaction_view(t) for t in transactions],
        }
        if format:
            data['document'] = self.reports.render_mini_statement(account, transactions,
                                                                  format, access_key)
        return OperationResult.ok("Mini statement", **data)

    @result_boundary
    def export_accounts_report(self, admin_session_id: str, format: str = "csv",
                               access_key: Optional[str] = None) -> OperationResult:
        self.sessions.require_admin(admin_session_id)
        document = self.reports.render_accounts(self.accounts.list_accounts(), format, access_key)
        return OperationResult.ok("Accounts report", document=document,
                                  encrypted=bool(access_key))

    @result_boundary
    def export_transactions_report(self, admin_session_id: str, format: str = "csv",
                                   access_key: Optional[str] = None,
                                   account_number: Optional[str] = None) -> OperationResult:
        self.sessions.require_admin(admin_session_id)
        transactions = (self.transaction_log.list_for_account(account_number)
                        if account_number else self.transaction_log.list_all())
        document = self.reports.render_transactions(transactions, format, access_key)
        return OperationResult.ok("Transactions report", document=document,
                                  encrypted=bool(access_key))

    @result_boundary
    def verify_audit_trail(self, admin_session_id: str) -> OperationResult:
        self.sessions.require_admin(admin_session_id)
        result = self.audit_trail.verify_integrity()
        if not result['valid']:
            return OperationResult.fail("Audit trail integrity check failed", "state_error", **result)
        return OperationResult.ok("Audit trail intact", **result)

    # Loans

    @result_boundary
    def loan_preview(self, amount: Union[str, int, Decimal], loan_type: str,
                     emi_plan: str) -> OperationResult:
        return OperationResult.ok("EMI preview", **calculate_emi(amount, loan_type, emi_plan).to_dict())

    @result_boundary
    def request_loan(self, account_number: str, pin: str, amount: Union[str, int, Decimal],
                     loan_type: str, emi_plan: str, government_id_number: str,
                     government_id_proof: Optional[str] = None,
                     interest_rate: Optional[Union[str, Decimal]] = None) -> OperationResult:
        self.security.authorize_transaction(account_number, pin)
        request = self.loans.submit_request(account_number, amount, loan_type, emi_plan,
                                            government_id_number, government_id_proof, interest_rate)
        quote = calculate_emi(request.requested_amount, request.loan_type, request.emi_plan,
                              request.interest_rate)
        return OperationResult.ok("Loan request submitted", request_id=request.id,
                                  status=request.status.value, preview=quote.to_dict())

    @result_boundary
    def pending_loans(self, admin_session_id: str) -> OperationResult:
        self.sessions.require_admin(admin_session_id)
        requests = self.loans.list_pending()
        return OperationResult.ok(f"{len(requests)} pending request(s)", requests=[
            {**r.to_dict(), 'review': self.loans.review_suggestion(r.account_number)}
            for r in requests
        ])

    @result_boundary
    def approve_loan(self, admin_session_id: str, request_id: str, comment: str = "") -> OperationResult:
        admin = self.sessions.require_admin(admin_session_id)
        request = self.loans.approve(request_id, admin.principal, comment)
        account = self.accounts.require_account(request.account_number)
        return OperationResult.ok("Loan approved", request_id=request.id,
                                  total_due=str(account.loan_total_due),
                                  balance=str(account.balance))

    @result_boundary
    def reject_loan(self, admin_session_id: str, request_id: str, comment: str) -> OperationResult:
        admin = self.sessions.require_admin(admin_session_id)
        self.loans.reject(request_id, admin.principal, comment)
        return OperationResult.ok("Loan rejected", request_id=request_id)

    @result_boundary
    def close_loan_early(self, account_number: str, pin: str) -> OperationResult:
        self.security.authorize_transaction(account_number, pin)
        transaction = self.loans.close_early(account_number)
        return OperationResult.ok(
            "Loan closed", transaction=_transaction_view(transaction),
            balance=str(self.ledger.get_balance(account_number))
        )

    @result_boundary
    def repay_loan(self, account_number: str, pin: str, amount: Union[str, int, Decimal],
                   client_request_id: Optional[str] = None) -> OperationResult:
        validate_account_number(account_number)
        amount = to_positive_amount(amount)
        self.security.authorize_transaction(account_number, pin)
        self._check_duplicate("LOAN_REPAYMENT", account_number, amount=amount,
                              client_request_id=client_request_id)
        transaction = self.loans.repay(account_number, amount)
        account = self.accounts.require_account(account_number)
        return OperationResult.ok(
            "Repayment recorded", transaction=_transaction_view(transaction),
            outstanding=str(account.loan_total_due), has_loan=account.has_loan
        )

    @result_boundary
    def set_auto_repayment(self, session_id: str, account_number: str, enabled: bool) -> OperationResult:
        self.sessions.require_account_session(session_id, account_number)
        self.loans.set_auto_repayment(account_number, enabled)
        return OperationResult.ok(f"Auto repayment {'enabled' if enabled else 'disabled'}")

    # Deletion requests

    @result_boundary
    def request_deletion(self, session_id: str, account_number: str, holder_name: str,
                         contact: str, ifsc_code: str, reason: str) -> OperationResult:
        request = self.deletions.submit(session_id, account_number, holder_name,
                                        contact, ifsc_code, reason)
        return OperationResult.ok("Deletion request submitted", request_id=request.id,
                                  had_loan=request.had_loan)

    @result_boundary
    def pending_deletions(self, admin_session_id: str) -> OperationResult:
        self.sessions.require_admin(admin_session_id)
        requests = self.deletions.list_pending()
        return OperationResult.ok(f"{len(requests)} pending request(s)",
                                  requests=[r.to_dict() for r in requests])

    @result_boundary
    def approve_deletion(self, admin_session_id: str, request_id: str, comment: str = "") -> OperationResult:
        if not self.deletions.approve(request_id, admin_session_id, comment):
            return OperationResult.fail("Account has an active loan; deletion cannot be approved",
                                        StateError.kind, request_id=request_id)
        return OperationResult.ok("Account deleted", request_id=request_id)

    @result_boundary
    def reject_deletion(self, admin_session_id: str, request_id: str, comment: str) -> OperationResult:
        self.deletions.reject(request_id, admin_session_id, comment)
        return OperationResult.ok("Deletion request rejected", request_id=request_id)
