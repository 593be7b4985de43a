"""
Report Rendering Module

Read-side projection of accounts and transactions into CSV or JSON
documents, optionally encrypted with a caller supplied access key.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Union
from enum import Enum
import base64
import csv
import io
import json
import os

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .accounts import Account
from .errors import AuthorizationError, ValidationError
from .logging_config import get_logger
from .transactions import Transaction


class ReportFormat(Enum):
    """Output formats for reports"""
    CSV = "csv"
    JSON = "json"


ENCRYPTED_MAGIC = b"BLRPT1"
SALT_LENGTH = 16

ACCOUNT_COLUMNS = [
    'account_number', 'holder_name', 'email', 'phone_number', 'branch', 'ifsc_code',
    'account_type', 'balance', 'status', 'has_loan', 'loan_total_due', 'created_at',
]

TRANSACTION_COLUMNS = [
    'id', 'created_at', 'transaction_type', 'amount', 'from_account', 'to_account',
    'category', 'status', 'rolled_back_by',
]

logger = get_logger("bank_ledger.reporting")


def _derive_key(access_key: str, salt: bytes, iterations: int) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=iterations,
    )
    return base64.urlsafe_b64encode(kdf.derive(access_key.encode('utf-8')))


def encrypt_report(document: bytes, access_key: str, iterations: int = 200000) -> bytes:
    """MAGIC + salt + Fernet token; the salt is random per document"""
    if not access_key:
        raise ValidationError("Access key is required for encryption")
    salt = os.urandom(SALT_LENGTH)
    token = Fernet(_derive_key(access_key, salt, iterations)).encrypt(document)
    return ENCRYPTED_MAGIC + salt + token


def decrypt_report(document: bytes, access_key: str, iterations: int = 200000) -> bytes:
    """
    Reverse encrypt_report

    Raises:
        ValidationError: Not an encrypted report
        AuthorizationError: Wrong access key or tampered document
    """
    if not is_encrypted(document):
        raise ValidationError("Document is not an encrypted report")
    salt = document[len(ENCRYPTED_MAGIC):len(ENCRYPTED_MAGIC) + SALT_LENGTH]
    token = document[len(ENCRYPTED_MAGIC) + SALT_LENGTH:]
    try:
        return Fernet(_derive_key(access_key or "", salt, iterations)).decrypt(token)
    except InvalidToken:
        raise AuthorizationError("Invalid access key for this report")


def is_encrypted(document: bytes) -> bool:
    return document.startswith(ENCRYPTED_MAGIC)


class ReportRenderer:
    """
    Stateless renderer; holds only the key derivation cost
    """

    def __init__(self, kdf_iterations: int = 200000):
        self.kdf_iterations = kdf_iterations

    def _rows_for_accounts(self, accounts: Sequence[Account]) -> List[Dict[str, Any]]:
        rows = []
        for account in accounts:
            summary = account.to_summary()
            rows.append({column: summary[column] for column in ACCOUNT_COLUMNS})
        return rows

    def _rows_for_transactions(self, transactions: Sequence[Transaction]) -> List[Dict[str, Any]]:
        rows = []
        for transaction in transactions:
            data = transaction.to_dict()
            rows.append({column: data.get(column) for column in TRANSACTION_COLUMNS})
        return rows

    def _render(self, title: str, columns: List[str], rows: List[Dict[str, Any]],
                format: ReportFormat, access_key: Optional[str],
                metadata: Optional[Dict[str, Any]] = None) -> bytes:
        if format == ReportFormat.JSON:
            document = json.dumps({
                'report': title,
                'generated_at': datetime.now(timezone.utc).isoformat(),
                'metadata': metadata or {},
                'rows': rows,
            }, indent=2, default=str).encode('utf-8')
        elif format == ReportFormat.CSV:
            output = io.StringIO()
            writer = csv.DictWriter(output, fieldnames=columns)
            writer.writeheader()
            for row in rows:
                writer.writerow({k: "" if v is None else v for k, v in row.items()})
            document = output.getvalue().encode('utf-8')
            output.close()
        else:
            raise ValidationError(f"Unsupported report format: {format}")

        logger.info(f"Rendered {title} report", extra={
            "action": "render_report",
            "extra": {"rows": len(rows), "format": format.value, "encrypted": bool(access_key)}
        })
        if access_key:
            return encrypt_report(document, access_key, self.kdf_iterations)
        return document

    def render_accounts(self, accounts: Sequence[Account],
                        format: Union[str, ReportFormat] = ReportFormat.CSV,
                        access_key: Optional[str] = None) -> bytes:
        return self._render("accounts", ACCOUNT_COLUMNS, self._rows_for_accounts(accounts),
                            _format(format), access_key)

    def render_transactions(self, transactions: Sequence[Transaction],
                            format: Union[str, ReportFormat] = ReportFormat.CSV,
                            access_key: Optional[str] = None) -> bytes:
        return self._render("transactions", TRANSACTION_COLUMNS,
                            self._rows_for_transactions(transactions), _format(format), access_key)

    def render_mini_statement(self, account: Account, transactions: Sequence[Transaction],
                              format: Union[str, ReportFormat] = ReportFormat.CSV,
                              access_key: Optional[str] = None) -> bytes:
        """Last few transactions of one account plus its current balance"""
        return self._render(
            "mini_statement", TRANSACTION_COLUMNS, self._rows_for_transactions(transactions),
            _format(format), access_key,
            metadata={'account_number': account.account_number, 'balance': str(account.balance)}
        )

    def decrypt(self, document: bytes, access_key: str) -> bytes:
        return decrypt_report(document, access_key, self.kdf_iterations)


def _format(value: Union[str, ReportFormat]) -> ReportFormat:
    if isinstance(value, ReportFormat):
        return value
    try:
        return ReportFormat(str(value).lower())
    except ValueError:
        raise ValidationError(f"Unsupported report format: {value}")
