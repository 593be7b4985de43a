"""
Shared fixtures: an in-memory banking core with controllable clocks and a
factory that opens valid accounts.
"""

import pytest

from bank_ledger.service import BankingCore

from support import FakeClock, account_details


@pytest.fixture
def guard_clock():
    return FakeClock()


@pytest.fixture
def otp_clock():
    return FakeClock()


@pytest.fixture
def core(guard_clock, otp_clock):
    system = BankingCore.for_testing(guard_clock=guard_clock, otp_clock=otp_clock)
    yield system
    system.close()


@pytest.fixture
def open_account(core):
    """Open an account through the core and return its account number"""
    def _open(**overrides) -> str:
        account, _ = core.accounts.create_account(**account_details(**overrides))
        return account.account_number
    return _open


@pytest.fixture
def admin_session(core):
    core.security.create_admin("ops_admin", "admin-pass-1", "ops@example.com")
    return core.security.admin_login("ops_admin", "admin-pass-1").id


@pytest.fixture
def details():
    return account_details
