"""
Helpers shared by the test suites: a hand-driven clock, valid account
details and a base class that builds a fresh in-memory banking core.
"""

import itertools

from bank_ledger.service import BankingCore


class FakeClock:
    """Monotonic-style clock advanced by hand"""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


_aadhar_numbers = itertools.count(100000000001)


def account_details(**overrides):
    """Valid keyword arguments for AccountManager.create_account"""
    details = {
        'holder_name': "Asha Rao",
        'email': "asha@example.com",
        'phone_number': "9876543210",
        'gender': "FEMALE",
        'address': "12 MG Road, Pune",
        'date_of_birth': "1990-05-17",
        'branch': "Pune",
        'government_id_type': "AADHAR",
        'government_id_number': str(next(_aadhar_numbers)),
        'login_secret': "login-pass-1",
        'initial_deposit': "5000.00",
        'account_type': "SAVINGS",
        'transaction_pin': "1234",
    }
    details.update(overrides)
    return details


class CoreTestCase:
    """Fresh in-memory banking core for every test"""

    def setup_method(self):
        self.guard_clock = FakeClock()
        self.otp_clock = FakeClock()
        self.core = BankingCore.for_testing(guard_clock=self.guard_clock, otp_clock=self.otp_clock)

    def teardown_method(self):
        self.core.close()

    def open_account(self, **overrides) -> str:
        """Open an account and return its account number"""
        account, _ = self.core.accounts.create_account(**account_details(**overrides))
        return account.account_number

    def balance(self, number):
        return self.core.ledger.get_balance(number)

    def admin_session(self, username: str = "ops_admin") -> str:
        self.core.security.create_admin(username, "admin-pass-1", f"{username}@example.com")
        return self.core.security.admin_login(username, "admin-pass-1").id
