"""
Test suite for account security and sessions

Login and PIN lockout tracks, legacy secret migration, OTP-based login
reset, administrator accounts and session binding.
"""

import pytest

from bank_ledger.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from bank_ledger.lockout import LockTrack
from bank_ledger.sessions import SessionRole

from support import CoreTestCase


class TestLogin:

    @pytest.fixture(autouse=True)
    def setup(self, core, open_account):
        self.core = core
        self.number = open_account()

    def test_login_opens_customer_session(self):
        session = self.core.security.login(self.number, "login-pass-1")
        assert session.role == SessionRole.CUSTOMER
        assert session.account_number == self.number
        assert self.core.sessions.require_account_session(session.id, self.number).id == session.id

    def test_session_bound_to_one_account(self, open_account):
        other = open_account()
        session = self.core.security.login(self.number, "login-pass-1")
        with pytest.raises(AuthorizationError):
            self.core.sessions.require_account_session(session.id, other)

    def test_logout_invalidates(self):
        session = self.core.security.login(self.number, "login-pass-1")
        assert self.core.security.logout(session.id) is True
        assert self.core.sessions.get_active(session.id) is None

    def test_three_failures_lock_login(self):
        for _ in range(2):
            with pytest.raises(AuthorizationError):
                self.core.security.login(self.number, "wrong")
        assert self.core.lockout.remaining_attempts(self.number, LockTrack.LOGIN) == 1

        with pytest.raises(AuthorizationError):
            self.core.security.login(self.number, "wrong")
        assert self.core.lockout.is_locked(self.number, LockTrack.LOGIN)

        # the right secret no longer gets through
        with pytest.raises(AuthorizationError):
            self.core.security.login(self.number, "login-pass-1")
        assert self.core.gateway.outbox[-1]["subject"] == "Security alert: login locked"

    def test_success_resets_counter(self):
        with pytest.raises(AuthorizationError):
            self.core.security.login(self.number, "wrong")
        self.core.security.login(self.number, "login-pass-1")
        assert self.core.lockout.get_state(self.number, LockTrack.LOGIN).failed_attempts == 0

    def test_tracks_are_independent(self):
        for _ in range(3):
            with pytest.raises(AuthorizationError):
                self.core.security.authorize_transaction(self.number, "0000")
        assert self.core.lockout.is_locked(self.number, LockTrack.TRANSACTION)
        assert not self.core.lockout.is_locked(self.number, LockTrack.LOGIN)
        self.core.security.login(self.number, "login-pass-1")

    def test_legacy_plaintext_is_migrated(self):
        self.core.storage.update("accounts", self.number, {'login_secret_hash': "legacy-pass"})

        self.core.security.login(self.number, "legacy-pass")

        stored = self.core.storage.load("accounts", self.number)['login_secret_hash']
        assert stored.startswith("scrypt$")
        assert "legacy-pass" not in stored
        self.core.security.login(self.number, "legacy-pass")

    def test_change_transaction_pin(self):
        self.core.security.change_transaction_pin(self.number, "1234", "9876")
        self.core.security.authorize_transaction(self.number, "9876")
        with pytest.raises(AuthorizationError):
            self.core.security.authorize_transaction(self.number, "1234")


class TestOTPReset:

    @pytest.fixture(autouse=True)
    def setup(self, core, open_account, otp_clock):
        self.core = core
        self.clock = otp_clock
        self.number = open_account()

    def lock_login(self):
        for _ in range(3):
            with pytest.raises(AuthorizationError):
                self.core.security.login(self.number, "wrong")

    def test_otp_delivered_by_email_and_sms(self):
        code = self.core.security.request_account_otp(self.number)
        channels = {m["channel"]: m for m in self.core.gateway.outbox[-2:]}
        assert code in channels["email"]["body"]
        assert code in channels["sms"]["body"]
        assert channels["sms"]["to"] == "9876543210"

    def test_reset_unlocks_login(self):
        self.lock_login()
        code = self.core.security.request_account_otp(self.number)

        self.core.security.reset_login_secret(self.number, code, "new-login-2")

        assert not self.core.lockout.is_locked(self.number, LockTrack.LOGIN)
        self.core.security.login(self.number, "new-login-2")

    def test_wrong_code_rejected(self):
        self.core.security.request_account_otp(self.number)
        with pytest.raises(AuthorizationError):
            self.core.security.reset_login_secret(self.number, "not-a-code", "new-login-2")

    def test_expired_code_rejected(self):
        code = self.core.security.request_account_otp(self.number)
        self.clock.advance(5 * 60 + 1)
        with pytest.raises(AuthorizationError):
            self.core.security.reset_login_secret(self.number, code, "new-login-2")

    def test_code_is_single_use(self):
        code = self.core.security.request_account_otp(self.number)
        self.core.security.reset_login_secret(self.number, code, "new-login-2")
        with pytest.raises(AuthorizationError):
            self.core.security.reset_login_secret(self.number, code, "new-login-3")


class TestAdministrators:

    @pytest.fixture(autouse=True)
    def setup(self, core):
        self.core = core
        core.security.create_admin("auditor", "audit-pass-1")

    def test_admin_login(self):
        session = self.core.security.admin_login("auditor", "audit-pass-1")
        assert session.role == SessionRole.ADMIN
        assert self.core.sessions.require_admin(session.id).principal == "auditor"

    def test_bad_admin_password(self):
        with pytest.raises(AuthorizationError):
            self.core.security.admin_login("auditor", "nope")
        with pytest.raises(AuthorizationError):
            self.core.security.admin_login("nobody", "audit-pass-1")

    def test_duplicate_admin(self):
        with pytest.raises(ConflictError):
            self.core.security.create_admin("auditor", "other")

    def test_customer_session_is_not_admin(self, open_account):
        number = open_account()
        session = self.core.security.login(number, "login-pass-1")
        with pytest.raises(AuthorizationError):
            self.core.sessions.require_admin(session.id)

    def test_unlock_track(self, open_account):
        number = open_account()
        for _ in range(3):
            with pytest.raises(AuthorizationError):
                self.core.security.authorize_transaction(number, "0000")
        admin = self.core.security.admin_login("auditor", "audit-pass-1")

        self.core.security.unlock(number, LockTrack.TRANSACTION, admin.id)

        assert not self.core.lockout.is_locked(number, LockTrack.TRANSACTION)
        self.core.security.authorize_transaction(number, "1234")


class TestTransactionPinReset(CoreTestCase):
    """Test the forgotten-PIN flow"""

    def setup_method(self):
        super().setup_method()
        self.security = self.core.security
        self.number = self.open_account()

    def lock_pin(self):
        for _ in range(3):
            with pytest.raises(AuthorizationError):
                self.security.authorize_transaction(self.number, "0000")

    def test_reset_sets_pin_and_clears_lock(self):
        """A verified reset replaces the PIN and unlocks the transaction track"""
        self.lock_pin()
        code = self.security.request_pin_reset(self.number, "ASHA@example.com")

        self.security.reset_transaction_pin(self.number, code, "4321")

        assert not self.core.lockout.is_locked(self.number, LockTrack.TRANSACTION)
        assert self.core.lockout.get_state(self.number, LockTrack.TRANSACTION).failed_attempts == 0
        self.security.authorize_transaction(self.number, "4321")
        with pytest.raises(AuthorizationError):
            self.security.authorize_transaction(self.number, "1234")

    def test_phone_is_accepted_as_contact(self):
        """The registered phone number also proves the contact"""
        assert self.security.request_pin_reset(self.number, "9876543210")

    @pytest.mark.parametrize("contact", ["", "someone@example.com", "9000000000"])
    def test_contact_must_match(self, contact):
        """An unknown or missing contact gets no OTP"""
        self.core.gateway.outbox.clear()
        with pytest.raises(ValidationError):
            self.security.request_pin_reset(self.number, contact)
        assert self.core.gateway.outbox == []

    def test_deleted_account_blocked(self):
        """Deleted accounts can neither request nor complete a reset"""
        code = self.security.request_pin_reset(self.number, "asha@example.com")
        self.core.storage.update("accounts", self.number, {"status": "DELETED", "is_deleted": True})

        with pytest.raises(AuthorizationError):
            self.security.request_pin_reset(self.number, "asha@example.com")
        with pytest.raises(AuthorizationError):
            self.security.reset_transaction_pin(self.number, code, "4321")

    def test_unknown_account(self):
        """Unknown accounts are reported as not found"""
        with pytest.raises(NotFoundError):
            self.security.request_pin_reset("19999999999", "asha@example.com")

    def test_wrong_code_keeps_lock(self):
        """A bad OTP changes nothing"""
        self.lock_pin()
        self.security.request_pin_reset(self.number, "asha@example.com")
        with pytest.raises(AuthorizationError):
            self.security.reset_transaction_pin(self.number, "bad-code", "4321")
        assert self.core.lockout.is_locked(self.number, LockTrack.TRANSACTION)

    def test_new_pin_must_be_four_digits(self):
        """A malformed PIN is refused before the OTP is spent"""
        code = self.security.request_pin_reset(self.number, "asha@example.com")
        with pytest.raises(ValidationError):
            self.security.reset_transaction_pin(self.number, code, "12")
        self.security.reset_transaction_pin(self.number, code, "4321")


class TestAdminManagement(CoreTestCase):
    """Test listing, updating and deleting administrators"""

    def setup_method(self):
        super().setup_method()
        self.security = self.core.security
        self.root = self.admin_session("admin")
        self.ops = self.admin_session("ops_admin")

    def test_list_admins_hides_password_hashes(self):
        """Admins are listed oldest first without their hashes"""
        admins = self.security.list_admins(self.ops)
        assert [a['username'] for a in admins] == ["admin", "ops_admin"]
        assert all('password_hash' not in a for a in admins)

    def test_default_admin_updates_contacts(self):
        """The default admin can change another admin's email and phone"""
        updated = self.security.update_admin("ops_admin", self.root, email="ops2@example.com",
                                             phone_number="9123456780")
        assert updated['email'] == "ops2@example.com"
        assert updated['phone_number'] == "9123456780"
        assert 'password_hash' not in updated
        stored = self.core.storage.load("admins", "ops_admin")
        assert stored['email'] == "ops2@example.com"

    def test_only_default_admin_updates(self):
        """Other admins cannot change contact details"""
        with pytest.raises(AuthorizationError):
            self.security.update_admin("ops_admin", self.ops, email="ops2@example.com")

    def test_update_needs_a_field(self):
        """Email or phone is required"""
        with pytest.raises(ValidationError):
            self.security.update_admin("ops_admin", self.root)
        with pytest.raises(ValidationError):
            self.security.update_admin("ops_admin", self.root, phone_number="123")

    def test_update_unknown_admin(self):
        """Updating a missing admin is not found"""
        with pytest.raises(NotFoundError):
            self.security.update_admin("ghost", self.root, email="ghost@example.com")

    def test_delete_admin(self):
        """A deleted admin can no longer log in"""
        self.security.delete_admin("ops_admin", self.root)
        assert self.core.storage.load("admins", "ops_admin") is None
        with pytest.raises(AuthorizationError):
            self.security.admin_login("ops_admin", "admin-pass-1")

    def test_default_admin_and_self_are_protected(self):
        """Nobody deletes the default admin and nobody deletes themselves"""
        with pytest.raises(ValidationError):
            self.security.delete_admin("admin", self.ops)
        with pytest.raises(ValidationError):
            self.security.delete_admin("ops_admin", self.ops)

    def test_delete_unknown_admin(self):
        """Deleting a missing admin is not found"""
        with pytest.raises(NotFoundError):
            self.security.delete_admin("ghost", self.root)
