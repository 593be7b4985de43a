"""
Error Taxonomy Module

Typed business errors raised inside the ledger and the result type returned
at the core boundary. Business errors are recovered into OperationResult;
anything else is an infrastructure failure and propagates.
"""

import functools
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .logging_config import get_logger


class LedgerError(ValueError):
    """Base class for business rule violations surfaced to callers"""
    kind = "ledger_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(LedgerError):
    """Malformed or out-of-range input"""
    kind = "validation_error"


class AuthorizationError(LedgerError):
    """Wrong secret, locked track, session mismatch or missing role"""
    kind = "authorization_error"


class NotFoundError(LedgerError):
    """Referenced account, transaction or request does not exist"""
    kind = "not_found"


class ConflictError(LedgerError):
    """Duplicate request or already-existing resource"""
    kind = "conflict"


class InsufficientFundsError(LedgerError):
    """Debit larger than the available balance"""
    kind = "insufficient_funds"


class InsufficientBalanceForRollbackError(LedgerError):
    """Credited account can no longer cover the clawback of a reversal"""
    kind = "insufficient_balance_for_rollback"


class StateError(LedgerError):
    """Illegal lifecycle transition"""
    kind = "state_error"


class InfrastructureError(Exception):
    """Persistence or other infrastructure failure the core cannot recover from"""


@dataclass
class OperationResult:
    """Outcome of a mutating operation: success flag plus a human readable message"""
    success: bool
    message: str
    data: Dict[str, Any] = field(default_factory=dict)
    error_kind: Optional[str] = None

    @classmethod
    def ok(cls, message: str, **data) -> 'OperationResult':
        return cls(success=True, message=message, data=data)

    @classmethod
    def fail(cls, message: str, error_kind: str = LedgerError.kind, **data) -> 'OperationResult':
        return cls(success=False, message=message, data=data, error_kind=error_kind)

    def to_dict(self) -> Dict[str, Any]:
        result = {"success": self.success, "message": self.message}
        if self.error_kind:
            result["error"] = self.error_kind
        result.update(self.data)
        return result

    def __bool__(self) -> bool:
        return self.success


def result_boundary(func):
    """
    Convert LedgerError raised by the wrapped operation into a failed
    OperationResult. Other exceptions are logged with context and re-raised
    as InfrastructureError.
    """
    logger = get_logger("bank_ledger.boundary")

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except LedgerError as e:
            logger.info(f"{func.__name__} rejected: {e.message}",
                        extra={"action": func.__name__, "extra": {"error": e.kind}})
            return OperationResult.fail(e.message, e.kind)
        except InfrastructureError:
            logger.exception(f"{func.__name__} failed")
            raise
        except Exception as e:
            logger.exception(f"{func.__name__} failed with unexpected error")
            raise InfrastructureError(f"{func.__name__} failed: {e}") from e

    return wrapper
