"""
Balance Book Module

The only code path that writes account balances. Debits are conditional
writes against the stored balance, so a balance can never go below zero
even if a caller skipped its own sufficiency check.
"""

from decimal import Decimal
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .errors import NotFoundError
from .locks import AccountLockRegistry
from .money import quantize
from .storage import StorageInterface


class BalanceBook:
    """Reads and writes the balance field of account records"""

    def __init__(self, storage: StorageInterface, locks: AccountLockRegistry,
                 table_name: str = "accounts"):
        self.storage = storage
        self.locks = locks
        self.table_name = table_name

    def get_balance(self, account_number: str) -> Decimal:
        record = self.storage.load(self.table_name, account_number)
        if record is None:
            raise NotFoundError(f"Account {account_number} not found")
        return Decimal(record['balance'])

    def _changes(self, balance: Decimal, extra: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        now = datetime.now(timezone.utc).isoformat()
        changes = {'balance': str(quantize(balance)), 'updated_at': now, 'last_activity': now}
        if extra:
            changes.update(extra)
        return changes

    def credit(self, account_number: str, amount: Decimal,
               extra: Optional[Dict[str, Any]] = None) -> Decimal:
        """
        Add amount to the balance.

        Returns:
            New balance
        """
        with self.locks.acquire(account_number):
            new_balance = self.get_balance(account_number) + amount
            self.storage.update(self.table_name, account_number, self._changes(new_balance, extra))
            return quantize(new_balance)

    def debit(self, account_number: str, amount: Decimal,
              extra: Optional[Dict[str, Any]] = None) -> Optional[Decimal]:
        """
        Subtract amount if the stored balance covers it.

        Returns:
            New balance, or None when the balance was insufficient (nothing written)
        """
        with self.locks.acquire(account_number):
            new_balance = self.get_balance(account_number) - amount
            if new_balance < 0:
                return None
            written = self.storage.update_if(
                self.table_name, account_number,
                lambda record: Decimal(record['balance']) >= amount,
                self._changes(new_balance, extra)
            )
            return quantize(new_balance) if written else None

    def set_balance(self, account_number: str, balance: Decimal) -> None:
        """Restore a previously observed balance (compensation only)"""
        with self.locks.acquire(account_number):
            self.storage.update(self.table_name, account_number, {'balance': str(quantize(balance))})
