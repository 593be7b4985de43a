"""
Ledger Module

Deposit, withdraw and transfer. Each operation validates under the lock of
every account it touches, mutates balances through the balance book and
writes exactly one transaction. Validation failures change nothing;
notification failures never undo a completed movement.
"""

from decimal import Decimal
from typing import Any, Dict, Optional, Union

from .accounts import Account, AccountManager, AccountStatus
from .audit import AuditTrail, AuditEventType
from .balances import BalanceBook
from .errors import (
    AuthorizationError, InfrastructureError, InsufficientFundsError,
    StateError, ValidationError
)
from .locks import AccountLockRegistry
from .lockout import LockoutTracker, LockTrack
from .logging_config import get_logger, log_action
from .money import format_amount, to_positive_amount
from .notifications import Notifier
from .transactions import Transaction, TransactionLog, TransactionType


class Ledger:
    """
    Owns balance-changing customer operations
    """

    def __init__(
        self,
        accounts: AccountManager,
        balances: BalanceBook,
        transaction_log: TransactionLog,
        lockout: LockoutTracker,
        locks: AccountLockRegistry,
        audit_trail: Optional[AuditTrail] = None,
        notifier: Optional[Notifier] = None,
        min_debit_amount: Decimal = Decimal("100.00")
    ):
        self.accounts = accounts
        self.balances = balances
        self.transaction_log = transaction_log
        self.lockout = lockout
        self.locks = locks
        self.audit_trail = audit_trail
        self.notifier = notifier
        self.min_debit_amount = min_debit_amount
        self.logger = get_logger("bank_ledger.ledger")

    def _check_debit_amount(self, amount: Decimal, balance: Decimal) -> None:
        if amount < self.min_debit_amount:
            raise ValidationError(f"Minimum amount is {format_amount(self.min_debit_amount)}")
        if amount > balance:
            raise InsufficientFundsError(
                f"Insufficient funds: available balance is {format_amount(balance)}"
            )

    def _check_transaction_track(self, account_number: str) -> None:
        if self.lockout.is_locked(account_number, LockTrack.TRANSACTION):
            raise AuthorizationError("Transactions are locked on this account")

    def _commit(self, transaction: Transaction, previous: Dict[str, Decimal],
                previous_fields: Optional[Dict[str, Dict[str, Any]]] = None) -> None:
        """
        Store the transaction for balances already written. If it cannot be
        stored, put the balances (and any other fields the movement changed,
        such as status) back so no movement exists without its record.
        """
        try:
            recorded = self.transaction_log.record(transaction)
        except Exception as e:
            self._compensate(previous, previous_fields)
            raise InfrastructureError(f"Could not record transaction {transaction.id}: {e}") from e
        if not recorded:
            self._compensate(previous, previous_fields)
            raise StateError("Transaction was rejected by the transaction log")

    def _compensate(self, previous: Dict[str, Decimal],
                    previous_fields: Optional[Dict[str, Dict[str, Any]]] = None) -> None:
        for account_number, balance in previous.items():
            self.balances.set_balance(account_number, balance)
        for account_number, fields in (previous_fields or {}).items():
            self.accounts.update_fields(account_number, fields)
        self.logger.error(f"Balances restored after failed transaction write: {sorted(previous)}")

    def _alert(self, account: Account, transaction: Transaction, direction: str, balance: Decimal) -> None:
        if not self.notifier:
            return
        self.notifier.notify(
            "transaction_alert", account.email,
            holder_name=account.holder_name,
            transaction_type=transaction.transaction_type.value,
            direction=direction,
            amount=format_amount(transaction.amount),
            account_number=account.account_number,
            transaction_id=transaction.id,
            category=transaction.category,
            balance=format_amount(balance)
        )

    def _log(self, transaction: Transaction, actor: str) -> None:
        log_action(
            self.logger, "info", f"{transaction.transaction_type.value} completed",
            user_id=actor, action=transaction.transaction_type.value.lower(),
            resource=f"transaction:{transaction.id}",
            extra={"amount": str(transaction.amount),
                   "from_account": transaction.from_account,
                   "to_account": transaction.to_account}
        )

    def deposit(self, account_number: str, amount: Union[str, int, Decimal],
                category: Optional[str] = None) -> Transaction:
        """
        Credit an account. Reactivates an INACTIVE account.

        Raises:
            ValidationError: Non-positive amount
            NotFoundError: Unknown account
            StateError: Account is deleted
        """
        amount = to_positive_amount(amount)
        with self.locks.acquire(account_number):
            account = self.accounts.require_operable(account_number)
            reactivate = account.status == AccountStatus.INACTIVE
            transaction = self.transaction_log.new_transaction(
                TransactionType.DEPOSIT, amount, to_account=account_number, category=category
            )
            extra = {'status': AccountStatus.ACTIVE.value} if reactivate else None
            new_balance = self.balances.credit(account_number, amount, extra)
            self._commit(
                transaction, {account_number: account.balance},
                {account_number: {'status': account.status.value}} if reactivate else None
            )

        if reactivate and self.audit_trail:
            self.audit_trail.try_log_event(
                AuditEventType.ACCOUNT_REACTIVATED, "account", account_number,
                {"transaction_id": transaction.id}
            )
        self._log(transaction, account_number)
        self._alert(account, transaction, "Credit", new_balance)
        return transaction

    def withdraw(self, account_number: str, amount: Union[str, int, Decimal],
                 category: Optional[str] = None) -> Transaction:
        """
        Debit an account.

        Raises:
            ValidationError: Amount below the minimum
            AuthorizationError: Transaction track locked
            InsufficientFundsError: Amount above the balance
            NotFoundError / StateError: Unknown or deleted account
        """
        amount = to_positive_amount(amount)
        with self.locks.acquire(account_number):
            account = self.accounts.require_operable(account_number)
            self._check_transaction_track(account_number)
            self._check_debit_amount(amount, account.balance)

            transaction = self.transaction_log.new_transaction(
                TransactionType.WITHDRAW, amount, from_account=account_number, category=category
            )
            new_balance = self.balances.debit(account_number, amount)
            if new_balance is None:
                raise InsufficientFundsError("Insufficient funds")
            self._commit(transaction, {account_number: account.balance})

        self._log(transaction, account_number)
        self._alert(account, transaction, "Debit", new_balance)
        return transaction

    def transfer(self, from_account: str, to_account: str, amount: Union[str, int, Decimal],
                 expected_ifsc: str, category: Optional[str] = None) -> Transaction:
        """
        Move money between two accounts

        Args:
            from_account: Sender
            to_account: Recipient
            amount: Amount to move
            expected_ifsc: IFSC the sender believes the recipient has; must
                match the recipient's stored IFSC (case-insensitive)
            category: Free text label

        Raises:
            ValidationError: Same account, bad amount or IFSC mismatch
            AuthorizationError: Sender's transaction track locked
            InsufficientFundsError: Amount above the sender's balance
            NotFoundError / StateError: Unknown or deleted account
        """
        amount = to_positive_amount(amount)
        if from_account == to_account:
            raise ValidationError("Cannot transfer to the same account")
        if not expected_ifsc or not expected_ifsc.strip():
            raise ValidationError("Recipient IFSC code is required")

        with self.locks.acquire(from_account, to_account):
            sender = self.accounts.require_operable(from_account)
            recipient = self.accounts.require_operable(to_account)
            self._check_transaction_track(from_account)
            if expected_ifsc.strip().upper() != recipient.ifsc_code.upper():
                raise ValidationError("IFSC code does not match the recipient account")
            self._check_debit_amount(amount, sender.balance)

            transaction = self.transaction_log.new_transaction(
                TransactionType.TRANSFER, amount,
                from_account=from_account, to_account=to_account, category=category
            )
            sender_balance = self.balances.debit(from_account, amount)
            if sender_balance is None:
                raise InsufficientFundsError("Insufficient funds")
            recipient_balance = self.balances.credit(to_account, amount)
            self._commit(transaction, {from_account: sender.balance, to_account: recipient.balance})

        self._log(transaction, from_account)
        self._alert(sender, transaction, f"Transfer to {to_account}", sender_balance)
        self._alert(recipient, transaction, f"Transfer from {from_account}", recipient_balance)
        return transaction

    def get_balance(self, account_number: str) -> Decimal:
        return self.accounts.require_account(account_number).balance
