"""
Loan Lifecycle Module

Loan requests move PENDING -> APPROVED | REJECTED and APPROVED -> CLOSED.
Approval credits the principal as a LOAN_CREDIT transaction and writes the
loan metadata onto the account; closing debits the outstanding total as a
single LOAN_REPAYMENT transaction. Interest is simple, not amortized.
"""

from decimal import Decimal, ROUND_HALF_UP
from datetime import datetime, timedelta, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union
from enum import Enum
import uuid

from .accounts import AccountManager, LOAN_FIELDS_CLEARED
from .audit import AuditTrail, AuditEventType
from .balances import BalanceBook
from .errors import (
    ConflictError, InsufficientFundsError, InfrastructureError, NotFoundError,
    StateError, ValidationError
)
from .locks import AccountLockRegistry
from .logging_config import get_logger, log_action
from .money import ZERO, format_amount, quantize, to_amount, to_positive_amount
from .notifications import Notifier
from .storage import StorageInterface, StorageRecord
from .transactions import Transaction, TransactionLog, TransactionType, TransactionStatus


class LoanStatus(Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CLOSED = "CLOSED"


ALLOWED_TRANSITIONS = {
    LoanStatus.PENDING: {LoanStatus.APPROVED, LoanStatus.REJECTED},
    LoanStatus.APPROVED: {LoanStatus.CLOSED},
    LoanStatus.REJECTED: set(),
    LoanStatus.CLOSED: set(),
}

# Annual interest rate (%) by loan type; anything else gets DEFAULT_INTEREST_RATE
INTEREST_RATES = {
    "HOME LOAN": Decimal("8.0"),
    "EDUCATION LOAN": Decimal("6.5"),
    "PERSONAL LOAN": Decimal("11.0"),
}
DEFAULT_INTEREST_RATE = Decimal("10.0")

# Number of instalments by EMI plan
EMI_INSTALMENTS = {
    "MONTHLY": 12,
    "QUARTERLY": 4,
    "YEARLY": 1,
}
DEFAULT_INSTALMENTS = 12

CATEGORY_SANCTIONED = "Loan Sanctioned"
CATEGORY_EARLY_CLOSURE = "Loan Early Closure"
CATEGORY_REPAYMENT = "Loan Repayment"


def interest_rate_for(loan_type: Optional[str]) -> Decimal:
    return INTEREST_RATES.get((loan_type or "").strip().upper(), DEFAULT_INTEREST_RATE)


def instalments_for(emi_plan: Optional[str]) -> int:
    return EMI_INSTALMENTS.get((emi_plan or "").strip().upper(), DEFAULT_INSTALMENTS)


@dataclass(frozen=True)
class EMIQuote:
    """Repayment preview"""
    principal: Decimal
    interest_rate: Decimal
    interest: Decimal
    total_payable: Decimal
    instalments: int
    emi: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            'principal': str(self.principal),
            'interest_rate': str(self.interest_rate),
            'interest': str(self.interest),
            'total_payable': str(self.total_payable),
            'instalments': self.instalments,
            'emi': str(self.emi),
        }


def calculate_emi(amount: Union[str, int, Decimal], loan_type: Optional[str],
                  emi_plan: Optional[str], interest_rate: Optional[Decimal] = None) -> EMIQuote:
    """
    Pure EMI figure: interest = amount * rate / 100, total = amount + interest,
    emi = total / instalments.
    """
    principal = to_positive_amount(amount)
    rate = interest_rate if interest_rate is not None else interest_rate_for(loan_type)
    interest = quantize(principal * rate / Decimal(100))
    total = principal + interest
    instalments = instalments_for(emi_plan)
    return EMIQuote(
        principal=principal,
        interest_rate=rate,
        interest=interest,
        total_payable=total,
        instalments=instalments,
        emi=quantize(total / instalments)
    )


def required_balance_for(amount: Decimal, ratio: Decimal = Decimal("0.25")) -> Decimal:
    """Balance to maintain before requesting a loan (25% rule, rounded half-up)"""
    return (amount * ratio).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


@dataclass
class LoanRequest(StorageRecord):
    """Customer loan request"""
    account_number: str
    requested_amount: Decimal
    interest_rate: Decimal
    loan_type: str
    emi_plan: str
    government_id_number: str
    government_id_proof: Optional[str] = None
    status: LoanStatus = LoanStatus.PENDING
    admin_comment: Optional[str] = None
    processed_by: Optional[str] = None
    processed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['status'] = self.status.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanRequest':
        data = dict(data)
        data['status'] = LoanStatus(data['status'])
        data['requested_amount'] = Decimal(data['requested_amount'])
        data['interest_rate'] = Decimal(data['interest_rate'])
        if data.get('processed_at'):
            data['processed_at'] = datetime.fromisoformat(data['processed_at'])
        return super().from_dict(data)


class LoanManager:
    """
    Drives the loan state machine and the account's loan metadata
    """

    def __init__(
        self,
        storage: StorageInterface,
        accounts: AccountManager,
        balances: BalanceBook,
        transaction_log: TransactionLog,
        locks: AccountLockRegistry,
        audit_trail: AuditTrail,
        notifier: Optional[Notifier] = None,
        min_balance_ratio: Decimal = Decimal("0.25"),
        review_min_balance: Decimal = Decimal("5000.00"),
        review_min_deposits: Decimal = Decimal("20000.00"),
        review_months: int = 6
    ):
        self.storage = storage
        self.accounts = accounts
        self.balances = balances
        self.transaction_log = transaction_log
        self.locks = locks
        self.audit_trail = audit_trail
        self.notifier = notifier
        self.min_balance_ratio = min_balance_ratio
        self.review_min_balance = review_min_balance
        self.review_min_deposits = review_min_deposits
        self.review_months = review_months
        self.table_name = "loan_requests"
        self.logger = get_logger("bank_ledger.loans")

    # Queries

    def get_request(self, request_id: str) -> Optional[LoanRequest]:
        data = self.storage.load(self.table_name, request_id)
        return LoanRequest.from_dict(data) if data else None

    def require_request(self, request_id: str) -> LoanRequest:
        request = self.get_request(request_id)
        if request is None:
            raise NotFoundError(f"Loan request {request_id} not found")
        return request

    def list_requests(self, status: Optional[LoanStatus] = None,
                      account_number: Optional[str] = None) -> List[LoanRequest]:
        filters = {}
        if status:
            filters['status'] = status.value
        if account_number:
            filters['account_number'] = account_number
        requests = [LoanRequest.from_dict(d) for d in self.storage.find(self.table_name, filters)]
        requests.sort(key=lambda r: r.created_at)
        return requests

    def list_pending(self) -> List[LoanRequest]:
        return self.list_requests(LoanStatus.PENDING)

    def _active_request(self, account_number: str) -> Optional[LoanRequest]:
        for request in self.list_requests(account_number=account_number):
            if request.status in (LoanStatus.PENDING, LoanStatus.APPROVED):
                return request
        return None

    # Transitions

    def _transition(self, request: LoanRequest, target: LoanStatus,
                    actor: Optional[str], comment: Optional[str] = None) -> LoanRequest:
        if target not in ALLOWED_TRANSITIONS[request.status]:
            raise StateError(
                f"Loan request {request.id} is {request.status.value}; cannot move to {target.value}"
            )
        now = datetime.now(timezone.utc)
        changes = {
            'status': target.value,
            'processed_by': actor,
            'processed_at': now.isoformat(),
            'updated_at': now.isoformat(),
        }
        if comment is not None:
            changes['admin_comment'] = comment
        self.storage.update_if(
            self.table_name, request.id,
            lambda r: r['status'] == request.status.value,
            changes
        )
        return self.require_request(request.id)

    def submit_request(
        self,
        account_number: str,
        amount: Union[str, int, Decimal],
        loan_type: str,
        emi_plan: str,
        government_id_number: str,
        government_id_proof: Optional[str] = None,
        interest_rate: Optional[Union[str, Decimal]] = None
    ) -> LoanRequest:
        """
        Create a PENDING request. The caller has already verified the
        transaction PIN.

        Raises:
            ValidationError: Bad amount, missing type/plan/proof or ID mismatch
            InsufficientFundsError: Balance below the required share of the amount
            ConflictError: A loan is active or another request is in flight
            NotFoundError / StateError: Unknown or deleted account
        """
        amount = to_positive_amount(amount)
        if not loan_type or not loan_type.strip():
            raise ValidationError("Loan type is required")
        if not emi_plan or not emi_plan.strip():
            raise ValidationError("EMI plan is required")
        if not government_id_number or not government_id_number.strip():
            raise ValidationError("Government ID number is required")
        if not government_id_proof:
            raise ValidationError("Government ID proof is required")
        rate = to_amount(interest_rate) if interest_rate is not None else interest_rate_for(loan_type)
        if rate < ZERO:
            raise ValidationError("Interest rate cannot be negative")

        with self.locks.acquire(account_number):
            account = self.accounts.require_operable(account_number)
            if government_id_number.strip().upper() != account.government_id_number.upper():
                raise ValidationError("Government ID number does not match the registered ID")
            if account.has_loan or self._active_request(account_number):
                raise ConflictError("A loan is already active or awaiting review for this account")
            required = required_balance_for(amount, self.min_balance_ratio)
            if account.balance < required:
                raise InsufficientFundsError(
                    f"Maintain at least {format_amount(required)} in the account to request this loan"
                )

            now = datetime.now(timezone.utc)
            request = LoanRequest(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                account_number=account_number,
                requested_amount=amount,
                interest_rate=rate,
                loan_type=loan_type.strip(),
                emi_plan=emi_plan.strip().upper(),
                government_id_number=government_id_number.strip().upper(),
                government_id_proof=government_id_proof
            )
            self.storage.save(self.table_name, request.id, request.to_dict())

        log_action(
            self.logger, "info", "Loan requested",
            user_id=account_number, action="submit_loan", resource=f"loan_request:{request.id}",
            extra={"amount": str(amount), "loan_type": request.loan_type, "emi_plan": request.emi_plan}
        )
        self.audit_trail.try_log_event(
            AuditEventType.LOAN_REQUESTED, "loan_request", request.id,
            {"account_number": account_number, "amount": amount, "loan_type": request.loan_type},
            user_id=account_number
        )
        if self.notifier:
            self.notifier.notify(
                "loan_submitted", account.email, holder_name=account.holder_name,
                loan_type=request.loan_type, amount=format_amount(amount),
                emi_plan=request.emi_plan, request_id=request.id
            )
        return request

    def approve(self, request_id: str, admin: str, comment: str = "") -> LoanRequest:
        """
        Approve a PENDING request: credit the principal as LOAN_CREDIT and
        set the account's loan metadata with total due = principal + interest.

        Raises:
            StateError: Request not PENDING, or the account already holds a loan
        """
        request = self.require_request(request_id)
        with self.locks.acquire("loan:" + request_id):
            with self.locks.acquire(request.account_number):
                request = self.require_request(request_id)
                if LoanStatus.APPROVED not in ALLOWED_TRANSITIONS[request.status]:
                    raise StateError(f"Loan request {request_id} is already {request.status.value}")
                account = self.accounts.require_operable(request.account_number)
                if account.has_loan:
                    raise StateError("Account already has an active loan")

                principal = request.requested_amount
                total_due = quantize(principal + principal * request.interest_rate / Decimal(100))
                now = datetime.now(timezone.utc)

                credit = self.transaction_log.new_transaction(
                    TransactionType.LOAN_CREDIT, principal,
                    to_account=request.account_number, category=CATEGORY_SANCTIONED
                )
                self.balances.credit(request.account_number, principal, {
                    'has_loan': True,
                    'loan_amount': str(principal),
                    'loan_interest_rate': str(request.interest_rate),
                    'loan_total_due': str(total_due),
                    'loan_taken_date': now.isoformat(),
                    'loan_last_paid_date': None,
                    'loan_type': request.loan_type,
                    'emi_plan': request.emi_plan,
                })
                self._record_or_restore(credit, request.account_number, account)
                request = self._transition(request, LoanStatus.APPROVED, admin, comment)

        log_action(
            self.logger, "info", "Loan approved",
            user_id=admin, action="approve_loan", resource=f"loan_request:{request_id}",
            extra={"principal": str(principal), "total_due": str(total_due)}
        )
        self.audit_trail.try_log_event(
            AuditEventType.LOAN_APPROVED, "loan_request", request_id,
            {"account_number": request.account_number, "principal": principal,
             "total_due": total_due, "transaction_id": credit.id},
            user_id=admin
        )
        if self.notifier:
            self.notifier.notify(
                "loan_approved", account.email, holder_name=account.holder_name,
                loan_type=request.loan_type, amount=format_amount(principal),
                interest_rate=request.interest_rate, total_due=format_amount(total_due),
                comment=comment or "-"
            )
        return request

    def _record_or_restore(self, transaction: Transaction, account_number: str, before) -> None:
        """Undo the account write if its transaction cannot be stored"""
        try:
            recorded = self.transaction_log.record(transaction)
        except Exception as e:
            recorded = False
            error = e
        else:
            error = None
        if recorded:
            return
        restore = {
            'has_loan': before.has_loan,
            'loan_amount': str(before.loan_amount),
            'loan_interest_rate': str(before.loan_interest_rate),
            'loan_total_due': str(before.loan_total_due),
            'loan_taken_date': before.loan_taken_date.isoformat() if before.loan_taken_date else None,
            'loan_last_paid_date': before.loan_last_paid_date.isoformat() if before.loan_last_paid_date else None,
            'loan_type': before.loan_type,
            'emi_plan': before.emi_plan,
        }
        self.balances.set_balance(account_number, before.balance)
        self.accounts.update_fields(account_number, restore)
        self.logger.error(f"Loan write for {account_number} undone: transaction {transaction.id} not stored")
        if error is not None:
            raise InfrastructureError(f"Could not record transaction {transaction.id}: {error}") from error
        raise StateError("Transaction was rejected by the transaction log")

    def reject(self, request_id: str, admin: str, comment: str) -> LoanRequest:
        """Reject a PENDING request; clears any loan metadata on the account"""
        if not comment or not comment.strip():
            raise ValidationError("A comment is required to reject a loan request")
        request = self.require_request(request_id)
        with self.locks.acquire("loan:" + request_id):
            with self.locks.acquire(request.account_number):
                request = self._transition(self.require_request(request_id),
                                           LoanStatus.REJECTED, admin, comment.strip())
                account = self.accounts.get_account(request.account_number)
                if account is not None:
                    self.accounts.update_fields(request.account_number, LOAN_FIELDS_CLEARED)

        self.audit_trail.try_log_event(
            AuditEventType.LOAN_REJECTED, "loan_request", request_id,
            {"account_number": request.account_number, "comment": comment}, user_id=admin
        )
        if self.notifier and account is not None:
            self.notifier.notify(
                "loan_rejected", account.email, holder_name=account.holder_name,
                loan_type=request.loan_type, amount=format_amount(request.requested_amount),
                comment=comment
            )
        return request

    def close_early(self, account_number: str) -> Transaction:
        """
        Pay off the whole outstanding total in one LOAN_REPAYMENT transaction.
        The caller has already verified the transaction PIN.

        Raises:
            StateError: No active loan
            InsufficientFundsError: Balance below the outstanding total
        """
        with self.locks.acquire(account_number):
            account = self.accounts.require_operable(account_number)
            if not account.has_loan:
                raise StateError("No active loan on this account")
            outstanding = account.loan_total_due
            if account.balance < outstanding:
                raise InsufficientFundsError(
                    f"Balance {format_amount(account.balance)} is below the outstanding "
                    f"{format_amount(outstanding)}"
                )
            transaction = self._pay(account, outstanding, CATEGORY_EARLY_CLOSURE)

        self._after_payoff(account, outstanding, transaction)
        return transaction

    def repay(self, account_number: str, amount: Union[str, int, Decimal]) -> Transaction:
        """
        Partial repayment reducing the outstanding total; paying the full
        outstanding amount closes the loan.
        """
        amount = to_positive_amount(amount)
        with self.locks.acquire(account_number):
            account = self.accounts.require_operable(account_number)
            if not account.has_loan:
                raise StateError("No active loan on this account")
            if amount > account.loan_total_due:
                raise ValidationError(
                    f"Repayment exceeds the outstanding {format_amount(account.loan_total_due)}"
                )
            if account.balance < amount:
                raise InsufficientFundsError("Insufficient funds for this repayment")
            paid_off = amount == account.loan_total_due
            transaction = self._pay(account, amount,
                                    CATEGORY_EARLY_CLOSURE if paid_off else CATEGORY_REPAYMENT)

        if paid_off:
            self._after_payoff(account, amount, transaction)
        else:
            self.audit_trail.try_log_event(
                AuditEventType.LOAN_REPAYMENT, "account", account_number,
                {"amount": amount, "transaction_id": transaction.id}, user_id=account_number
            )
        return transaction

    def _pay(self, account, amount: Decimal, category: str) -> Transaction:
        """Debit, update the loan fields and write one LOAN_REPAYMENT (caller holds the lock)"""
        remaining = quantize(account.loan_total_due - amount)
        now = datetime.now(timezone.utc).isoformat()
        if remaining == ZERO:
            loan_changes = dict(LOAN_FIELDS_CLEARED, loan_last_paid_date=now)
        else:
            loan_changes = {'loan_total_due': str(remaining), 'loan_last_paid_date': now}

        transaction = self.transaction_log.new_transaction(
            TransactionType.LOAN_REPAYMENT, amount,
            from_account=account.account_number, category=category
        )
        if self.balances.debit(account.account_number, amount, loan_changes) is None:
            raise InsufficientFundsError("Insufficient funds")
        self._record_or_restore(transaction, account.account_number, account)

        if remaining == ZERO:
            approved = self.list_requests(LoanStatus.APPROVED, account.account_number)
            for request in approved:
                self._transition(request, LoanStatus.CLOSED, account.account_number)
        return transaction

    def _after_payoff(self, account, amount: Decimal, transaction: Transaction) -> None:
        log_action(
            self.logger, "info", "Loan closed",
            user_id=account.account_number, action="close_loan",
            resource=f"account:{account.account_number}",
            extra={"amount": str(amount), "transaction_id": transaction.id}
        )
        self.audit_trail.try_log_event(
            AuditEventType.LOAN_CLOSED, "account", account.account_number,
            {"amount": amount, "transaction_id": transaction.id}, user_id=account.account_number
        )
        if self.notifier:
            self.notifier.notify(
                "loan_closed", account.email, holder_name=account.holder_name,
                account_number=account.account_number, amount=format_amount(amount),
                balance=format_amount(account.balance - amount)
            )

    def set_auto_repayment(self, account_number: str, enabled: bool) -> None:
        """Stored preference only; nothing schedules payments from it"""
        account = self.accounts.require_operable(account_number)
        if not account.has_loan:
            raise StateError("No active loan on this account")
        self.accounts.update_fields(account_number, {'auto_repayment_enabled': bool(enabled)})
        self.audit_trail.try_log_event(
            AuditEventType.LOAN_AUTO_REPAY_CHANGED, "account", account_number,
            {"enabled": bool(enabled)}, user_id=account_number
        )

    # Admin review

    def review_suggestion(self, account_number: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Advisory figures for an admin reviewing a request: APPROVE when the
        maintained balance and recent deposits clear the configured bars,
        otherwise REVIEW.
        """
        account = self.accounts.require_account(account_number)
        now = now or datetime.now(timezone.utc)
        since = now - timedelta(days=30 * self.review_months)
        deposits = sum(
            (t.amount for t in self.transaction_log.list_for_account(account_number)
             if t.transaction_type == TransactionType.DEPOSIT
             and t.to_account == account_number
             and t.status == TransactionStatus.SUCCESS
             and t.created_at >= since),
            ZERO
        )
        approve = account.balance > self.review_min_balance and deposits > self.review_min_deposits
        return {
            'account_number': account_number,
            'average_balance': str(account.balance),
            'recent_deposits': str(quantize(deposits)),
            'suggestion': "APPROVE" if approve else "REVIEW",
        }
