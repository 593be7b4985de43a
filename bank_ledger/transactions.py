"""
Transaction Log Module

Append-only record of money movements and the rollback operation that
reverses a movement's balance effect exactly once.
"""

import secrets
from decimal import Decimal
from datetime import date, datetime, time, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union
from enum import Enum

from .audit import AuditTrail, AuditEventType
from .balances import BalanceBook
from .errors import ValidationError
from .locks import AccountLockRegistry
from .lockout import LockoutTracker, LockTrack
from .logging_config import get_logger, log_action
from .money import ZERO, format_amount, quantize
from .storage import StorageInterface, StorageRecord


DEFAULT_CATEGORY = "General"


class TransactionType(Enum):
    """Kinds of money movement"""
    DEPOSIT = "DEPOSIT"
    WITHDRAW = "WITHDRAW"
    TRANSFER = "TRANSFER"
    LOAN_CREDIT = "LOAN_CREDIT"
    LOAN_REPAYMENT = "LOAN_REPAYMENT"
    ROLLBACK = "ROLLBACK"
    ACCOUNT_CLOSED = "ACCOUNT_CLOSED"


class TransactionStatus(Enum):
    SUCCESS = "SUCCESS"
    REVERSED = "REVERSED"


REVERSIBLE_TYPES = (TransactionType.DEPOSIT, TransactionType.WITHDRAW, TransactionType.TRANSFER)
DEBIT_TYPES = (TransactionType.WITHDRAW, TransactionType.TRANSFER)


@dataclass
class Transaction(StorageRecord):
    """
    One money movement. from_account is None for credits with no source,
    to_account is None for debits with no destination.
    """
    transaction_type: TransactionType
    amount: Decimal
    from_account: Optional[str] = None
    to_account: Optional[str] = None
    category: str = DEFAULT_CATEGORY
    status: TransactionStatus = TransactionStatus.SUCCESS
    rolled_back_by: Optional[str] = None
    rolled_back_at: Optional[datetime] = None

    @property
    def is_reversed(self) -> bool:
        return self.status == TransactionStatus.REVERSED

    def touches(self, account_number: str) -> bool:
        return account_number in (self.from_account, self.to_account)

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['transaction_type'] = self.transaction_type.value
        result['status'] = self.status.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Transaction':
        data = dict(data)
        data['transaction_type'] = TransactionType(data['transaction_type'])
        data['status'] = TransactionStatus(data['status'])
        data['amount'] = Decimal(data['amount'])
        if data.get('rolled_back_at'):
            data['rolled_back_at'] = datetime.fromisoformat(data['rolled_back_at'])
        return super().from_dict(data)


def generate_transaction_id(now: Optional[datetime] = None) -> str:
    """TXN-YYYYMMDD-<8 hex>"""
    now = now or datetime.now(timezone.utc)
    return f"TXN-{now.strftime('%Y%m%d')}-{secrets.token_hex(4).upper()}"


def _filter_bound(value: Union[str, date, datetime, None], end_of_day: bool) -> Optional[datetime]:
    """ISO date or date-time to an aware datetime; None when absent"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        moment = value
    elif isinstance(value, date):
        moment = datetime.combine(value, time.max if end_of_day else time.min)
    else:
        text = str(value).strip()
        try:
            if len(text) == 10:
                moment = datetime.combine(date.fromisoformat(text), time.max if end_of_day else time.min)
            else:
                moment = datetime.fromisoformat(text)
        except ValueError:
            raise ValidationError(f"Invalid date: {value}")
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def _parse_enum(enum_class, value: Optional[str], label: str):
    if value is None or not str(value).strip():
        return None
    try:
        return enum_class(str(value).strip().upper())
    except ValueError:
        raise ValidationError(f"Unknown {label}: {value}")


class TransactionLog:
    """
    Stores transactions and reverses them
    """

    def __init__(
        self,
        storage: StorageInterface,
        balances: BalanceBook,
        locks: AccountLockRegistry,
        lockout: LockoutTracker,
        audit_trail: Optional[AuditTrail] = None
    ):
        self.storage = storage
        self.balances = balances
        self.locks = locks
        self.lockout = lockout
        self.audit_trail = audit_trail
        self.table_name = "transactions"
        self.logger = get_logger("bank_ledger.transactions")

    def new_transaction(
        self,
        transaction_type: TransactionType,
        amount: Decimal,
        from_account: Optional[str] = None,
        to_account: Optional[str] = None,
        category: Optional[str] = None
    ) -> Transaction:
        """Build (but do not store) a SUCCESS transaction"""
        now = datetime.now(timezone.utc)
        transaction_id = generate_transaction_id(now)
        while self.storage.exists(self.table_name, transaction_id):
            transaction_id = generate_transaction_id(now)
        return Transaction(
            id=transaction_id,
            created_at=now,
            updated_at=now,
            transaction_type=transaction_type,
            amount=quantize(amount),
            from_account=from_account,
            to_account=to_account,
            category=(category or "").strip() or DEFAULT_CATEGORY
        )

    def _rejection_reason(self, transaction: Transaction) -> Optional[str]:
        if transaction.amount <= ZERO:
            return "amount must be positive"
        if (transaction.transaction_type == TransactionType.TRANSFER
                and transaction.from_account == transaction.to_account):
            return "transfer to the same account"
        if (transaction.transaction_type in DEBIT_TYPES and transaction.from_account
                and self.lockout.is_locked(transaction.from_account, LockTrack.TRANSACTION)):
            return "source account transaction track is locked"
        return None

    def record(self, transaction: Transaction) -> bool:
        """
        Append a transaction.

        Returns:
            False (nothing stored, warning logged) for a self-transfer, a
            non-positive amount or a debit from a transaction-locked account
        """
        reason = self._rejection_reason(transaction)
        if reason:
            log_action(
                self.logger, "warning", f"Transaction rejected: {reason}",
                action="record_transaction", resource=f"transaction:{transaction.id}",
                extra={
                    "transaction_type": transaction.transaction_type.value,
                    "from_account": transaction.from_account,
                    "to_account": transaction.to_account,
                    "amount": str(transaction.amount)
                }
            )
            if self.audit_trail:
                self.audit_trail.try_log_event(
                    AuditEventType.TRANSACTION_REJECTED, "transaction", transaction.id,
                    {"reason": reason}
                )
            return False

        self.storage.save(self.table_name, transaction.id, transaction.to_dict())

        log_action(
            self.logger, "info", f"Transaction recorded: {transaction.transaction_type.value}",
            action="record_transaction", resource=f"transaction:{transaction.id}",
            extra={
                "amount": format_amount(transaction.amount),
                "from_account": transaction.from_account,
                "to_account": transaction.to_account,
                "category": transaction.category
            }
        )
        if self.audit_trail:
            self.audit_trail.try_log_event(
                AuditEventType.TRANSACTION_RECORDED, "transaction", transaction.id,
                {
                    "transaction_type": transaction.transaction_type,
                    "amount": transaction.amount,
                    "from_account": transaction.from_account,
                    "to_account": transaction.to_account
                }
            )
        return True

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        data = self.storage.load(self.table_name, transaction_id)
        return Transaction.from_dict(data) if data else None

    def list_all(self) -> List[Transaction]:
        transactions = [Transaction.from_dict(d) for d in self.storage.load_all(self.table_name)]
        transactions.sort(key=lambda t: t.created_at, reverse=True)
        return transactions

    def list_for_account(self, account_number: str, limit: Optional[int] = None) -> List[Transaction]:
        """Transactions touching an account, newest first"""
        transactions = (
            [Transaction.from_dict(d) for d in self.storage.find(self.table_name, {'from_account': account_number})]
            + [Transaction.from_dict(d) for d in self.storage.find(self.table_name, {'to_account': account_number})]
        )
        unique = {t.id: t for t in transactions}
        ordered = sorted(unique.values(), key=lambda t: t.created_at, reverse=True)
        return ordered[:limit] if limit else ordered

    def mini_statement(self, account_number: str, size: int = 5) -> List[Transaction]:
        return self.list_for_account(account_number, limit=size)

    def filter_transactions(
        self,
        from_date: Union[str, date, datetime, None] = None,
        to_date: Union[str, date, datetime, None] = None,
        transaction_type: Optional[str] = None,
        category: Optional[str] = None,
        status: Optional[str] = None,
        account_number: Optional[str] = None,
        limit: int = 100,
        offset: int = 0
    ) -> List[Transaction]:
        """
        Search across all accounts, newest first

        Args:
            from_date: Inclusive lower bound; a bare date means start of day
            to_date: Inclusive upper bound; a bare date means end of day
            transaction_type: Exact type, case-insensitive
            category: Case-insensitive substring of the category
            status: SUCCESS or REVERSED, case-insensitive
            account_number: Matches either endpoint
            limit: Page size; values <= 0 fall back to 100
            offset: Rows to skip; negative values count as 0

        Raises:
            ValidationError: Unparseable date, unknown type or status
        """
        start = _filter_bound(from_date, end_of_day=False)
        end = _filter_bound(to_date, end_of_day=True)
        kind = _parse_enum(TransactionType, transaction_type, "transaction type")
        wanted_status = _parse_enum(TransactionStatus, status, "transaction status")
        needle = (category or "").strip().lower()
        limit = limit if limit and limit > 0 else 100
        offset = max(offset or 0, 0)

        matches = []
        for transaction in self.list_all():
            if start and transaction.created_at < start:
                continue
            if end and transaction.created_at > end:
                continue
            if kind and transaction.transaction_type != kind:
                continue
            if wanted_status and transaction.status != wanted_status:
                continue
            if needle and needle not in transaction.category.lower():
                continue
            if account_number and not transaction.touches(account_number):
                continue
            matches.append(transaction)
        return matches[offset:offset + limit]

    # Rollback

    def rollback(self, transaction_id: str, actor: str) -> bool:
        """
        Reverse a transaction's balance effect exactly once.

        DEPOSIT debits the recipient, WITHDRAW credits the source, TRANSFER
        credits the sender and debits the recipient. A clawback the credited
        account can no longer cover leaves everything untouched.

        Returns:
            True if reversed now; False if not found, already reversed, not
            a reversible type, an endpoint account no longer exists, or the
            clawback is not covered
        """
        if not actor:
            raise ValidationError("Rollback actor is required")

        transaction = self.get_transaction(transaction_id)
        if transaction is None:
            self.logger.warning(f"Rollback of unknown transaction {transaction_id}")
            return False

        with self.locks.acquire("txn:" + transaction_id):
            with self.locks.acquire(transaction.from_account, transaction.to_account):
                transaction = self.get_transaction(transaction_id)
                if transaction.is_reversed:
                    self.logger.warning(f"Transaction {transaction_id} already reversed")
                    return False
                if transaction.transaction_type not in REVERSIBLE_TYPES:
                    self.logger.warning(
                        f"Transaction {transaction_id} of type "
                        f"{transaction.transaction_type.value} cannot be rolled back"
                    )
                    return False
                missing = self.missing_endpoint(transaction)
                if missing:
                    log_action(
                        self.logger, "warning",
                        f"Rollback refused: account {missing} no longer exists",
                        user_id=actor, action="rollback", resource=f"transaction:{transaction_id}"
                    )
                    return False
                if not self._reverse_balances(transaction):
                    log_action(
                        self.logger, "warning",
                        "Rollback refused: credited account cannot cover the clawback",
                        user_id=actor, action="rollback", resource=f"transaction:{transaction_id}"
                    )
                    return False

                now = datetime.now(timezone.utc)
                self.storage.update(self.table_name, transaction_id, {
                    'status': TransactionStatus.REVERSED.value,
                    'rolled_back_by': actor,
                    'rolled_back_at': now.isoformat(),
                    'updated_at': now.isoformat()
                })

        log_action(
            self.logger, "info", "Transaction rolled back",
            user_id=actor, action="rollback", resource=f"transaction:{transaction_id}",
            extra={"amount": str(transaction.amount),
                   "transaction_type": transaction.transaction_type.value}
        )
        if self.audit_trail:
            self.audit_trail.try_log_event(
                AuditEventType.TRANSACTION_REVERSED, "transaction", transaction_id,
                {"transaction_type": transaction.transaction_type, "amount": transaction.amount},
                user_id=actor
            )
        return True

    def missing_endpoint(self, transaction: Transaction) -> Optional[str]:
        """First endpoint account of the transaction that no longer exists"""
        for account_number in (transaction.from_account, transaction.to_account):
            if account_number and not self.storage.exists(self.balances.table_name, account_number):
                return account_number
        return None

    def _reverse_balances(self, transaction: Transaction) -> bool:
        """Caller holds the locks of both endpoints and checked they exist"""
        amount = transaction.amount
        kind = transaction.transaction_type

        if kind == TransactionType.DEPOSIT:
            return self.balances.debit(transaction.to_account, amount) is not None

        if kind == TransactionType.WITHDRAW:
            self.balances.credit(transaction.from_account, amount)
            return True

        # TRANSFER: check the recipient first so a shortfall changes nothing
        if self.balances.get_balance(transaction.to_account) < amount:
            return False
        if self.balances.debit(transaction.to_account, amount) is None:
            return False
        self.balances.credit(transaction.from_account, amount)
        return True
