"""
Test suite for accounts module

Account creation with KYC validation, lookups, admin detail updates and
the lifecycle actions: soft-delete, restore, deactivate and purge.
"""

import pytest
from datetime import date
from decimal import Decimal

from bank_ledger.accounts import AccountStatus, AccountType, generate_account_number
from bank_ledger.audit import AuditEventType
from bank_ledger.errors import (
    AuthorizationError, ConflictError, StateError, ValidationError
)
from bank_ledger.lockout import LockTrack
from bank_ledger.transactions import TransactionType

from support import CoreTestCase, account_details


class TestAccountCreation(CoreTestCase):
    """Test opening accounts"""

    def create(self, **overrides):
        return self.core.accounts.create_account(**account_details(**overrides))

    def test_create_savings_account(self):
        """A valid application opens an ACTIVE account at the branch's IFSC"""
        account, generated = self.create()

        assert generated is None
        assert len(account.account_number) == 11
        assert account.account_type == AccountType.SAVINGS
        assert account.balance == Decimal("5000.00")
        assert account.branch == "Pune"
        assert account.ifsc_code == "ASTN00PUN03"
        assert account.status == AccountStatus.ACTIVE

    def test_secrets_are_stored_hashed(self):
        """Neither login secret nor PIN is stored in plain text"""
        account, _ = self.create()
        record = self.core.storage.load("accounts", account.account_number)

        assert record['login_secret_hash'].startswith("scrypt$")
        assert record['transaction_secret_hash'].startswith("scrypt$")
        assert "1234" not in record['transaction_secret_hash']

    def test_generated_pin_when_absent(self):
        """A PIN is generated, returned once and works for transactions"""
        account, generated = self.create(transaction_pin=None)

        assert generated is not None and len(generated) == 4
        self.core.security.authorize_transaction(account.account_number, generated)
        welcome = self.core.gateway.outbox[-1]
        assert generated in welcome["body"]

    def test_opening_deposit_recorded_as_transaction(self):
        """The opening balance arrives as an Account Opening deposit"""
        account, _ = self.create(initial_deposit="2500")
        transactions = self.core.transaction_log.list_for_account(account.account_number)

        assert len(transactions) == 1
        assert transactions[0].transaction_type == TransactionType.DEPOSIT
        assert transactions[0].amount == Decimal("2500.00")
        assert transactions[0].category == "Account Opening"

    def test_minimum_opening_balance(self):
        """SAVINGS and CURRENT need 1000 to open"""
        with pytest.raises(ValidationError):
            self.create(initial_deposit="999.99")
        with pytest.raises(ValidationError):
            self.create(account_type="CURRENT", initial_deposit="500")

    def test_minor_forced_to_student(self):
        """Under 18 becomes STUDENT regardless of the requested type"""
        account, _ = self.create(
            date_of_birth="2012-03-01", account_type="SAVINGS", initial_deposit="0",
            today=date(2024, 3, 1)
        )
        assert account.account_type == AccountType.STUDENT
        assert account.balance == Decimal("0.00")
        assert self.core.transaction_log.list_for_account(account.account_number) == []

    def test_duplicate_government_id(self):
        """A government ID opens at most one account"""
        self.create(government_id_number="555566667777")
        with pytest.raises(ConflictError):
            self.create(government_id_number="555566667777", email="other@example.com")

    @pytest.mark.parametrize("field,value", [
        ("holder_name", "A1"),
        ("email", "not-an-email"),
        ("phone_number", "12345"),
        ("branch", "Chennai"),
        ("government_id_type", "PASSPORT"),
        ("account_type", "PLATINUM"),
        ("transaction_pin", "12"),
        ("initial_deposit", "lots"),
    ])
    def test_invalid_fields(self, field, value):
        """Every malformed field is a validation error"""
        with pytest.raises(ValidationError):
            self.create(**{field: value})

    def test_creation_is_audited_and_announced(self):
        """Opening writes an audit event and sends the welcome email"""
        account, _ = self.create()

        events = self.core.audit_trail.get_events_for_entity("account", account.account_number)
        assert events[0].event_type == AuditEventType.ACCOUNT_CREATED
        assert any(m["subject"] == "Welcome to AstroNova Bank" for m in self.core.gateway.outbox)

    def test_account_number_format(self):
        """Account numbers are 11 digits without a leading zero"""
        number = generate_account_number()
        assert len(number) == 11
        assert number.isdigit() and number[0] != "0"


class TestAccountLookup(CoreTestCase):
    """Test finding accounts"""

    def test_lookups(self):
        """Accounts are found by number and by government ID"""
        number = self.open_account(government_id_number="111122223333")

        assert self.core.accounts.exists(number)
        assert self.core.accounts.require_account(number).account_number == number
        assert self.core.accounts.find_by_government_id("111122223333").account_number == number
        assert self.core.accounts.get_account("19999999999") is None
        assert [a.account_number for a in self.core.accounts.list_accounts()] == [number]

    def test_summary_hides_secrets(self):
        """The public summary carries no secret hashes"""
        summary = self.core.accounts.require_account(self.open_account()).to_summary()
        assert 'login_secret_hash' not in summary
        assert 'transaction_secret_hash' not in summary
        assert summary['balance'] == "5000.00"

    def test_list_locked(self):
        """Only accounts with a locked track are listed"""
        clean = self.open_account()
        login_locked = self.open_account()
        pin_locked = self.open_account()
        self.core.lockout.force_lock(login_locked, LockTrack.LOGIN)
        self.core.lockout.force_lock(pin_locked, LockTrack.TRANSACTION)

        locked = {a.account_number for a in self.core.accounts.list_locked()}

        assert locked == {login_locked, pin_locked}
        assert clean not in locked


class TestDetailUpdates(CoreTestCase):
    """Test admin changes to contact and customer details"""

    def setup_method(self):
        super().setup_method()
        self.admin = self.admin_session()
        self.number = self.open_account()

    def test_update_contact(self):
        """Both contact fields are replaced and audited"""
        account = self.core.accounts.update_contact(self.number, "new@example.com",
                                                    "9123456780", self.admin)

        assert account.email == "new@example.com"
        assert account.phone_number == "9123456780"
        assert self.core.audit_trail.get_events_by_type(AuditEventType.CONTACT_UPDATED)

    @pytest.mark.parametrize("email,phone", [
        ("not-an-email", "9123456780"),
        ("new@example.com", "912345678"),
        ("", "9123456780"),
    ])
    def test_update_contact_validation(self, email, phone):
        """Malformed or missing contact fields change nothing"""
        with pytest.raises(ValidationError):
            self.core.accounts.update_contact(self.number, email, phone, self.admin)
        assert self.core.accounts.require_account(self.number).email == "asha@example.com"

    def test_update_contact_requires_admin(self):
        """Customers cannot call the admin update"""
        customer = self.core.security.login(self.number, "login-pass-1").id
        with pytest.raises(AuthorizationError):
            self.core.accounts.update_contact(self.number, "new@example.com", "9123456780", customer)

    def test_update_details(self):
        """Given fields change, omitted ones are kept"""
        account = self.core.accounts.update_details(
            self.number, self.admin, holder_name="Asha Menon", gender="female",
            account_type="current"
        )

        assert account.holder_name == "Asha Menon"
        assert account.gender == "FEMALE"
        assert account.account_type == AccountType.CURRENT
        assert account.address == "12 MG Road, Pune"
        events = self.core.audit_trail.get_events_by_type(AuditEventType.DETAILS_UPDATED)
        assert events[-1].user_id == "ops_admin"

    def test_update_details_needs_a_field(self):
        """Calling with nothing to change is refused"""
        with pytest.raises(ValidationError):
            self.core.accounts.update_details(self.number, self.admin)

    @pytest.mark.parametrize("changes", [
        {"holder_name": "A1"},
        {"address": "x"},
        {"gender": "robot"},
        {"account_type": "PLATINUM"},
    ])
    def test_update_details_validation(self, changes):
        """Each field goes through its creation-time validator"""
        with pytest.raises(ValidationError):
            self.core.accounts.update_details(self.number, self.admin, **changes)

    def test_minor_stays_student(self):
        """An under-age holder cannot be moved off STUDENT"""
        minor = self.open_account(date_of_birth="2015-01-01", initial_deposit="0")
        with pytest.raises(ValidationError):
            self.core.accounts.update_details(minor, self.admin, account_type="SAVINGS")

    def test_deleted_account_cannot_be_updated(self):
        """Deleted accounts reject detail changes"""
        self.core.storage.update("accounts", self.number, {"status": "DELETED", "is_deleted": True})
        with pytest.raises(StateError):
            self.core.accounts.update_details(self.number, self.admin, address="1 New Street")


class TestSoftDelete(CoreTestCase):
    """Customer self-service deletion"""

    def setup_method(self):
        super().setup_method()
        self.number = self.open_account()
        self.session_id = self.core.security.login(self.number, "login-pass-1").id

    def soft_delete(self, holder="Asha Rao", ifsc="ASTN00PUN03", contact="asha@example.com",
                    pin="1234", session_id=None):
        return self.core.accounts.soft_delete(session_id or self.session_id, self.number,
                                              holder, ifsc, contact, pin)

    def test_soft_delete(self):
        """Matching details delete, lock both tracks and end the session"""
        account = self.soft_delete(holder="asha rao", ifsc="astn00pun03")

        assert account.status == AccountStatus.DELETED
        assert account.is_deleted is True
        assert account.login_lock.is_locked
        assert account.transaction_lock.is_locked
        assert self.core.sessions.get_active(self.session_id) is None

    def test_contact_can_be_phone(self):
        """The phone number is accepted as the contact"""
        assert self.soft_delete(contact="9876543210").is_deleted

    def test_details_must_match(self):
        """A details mismatch is a validation error, as for deletion requests"""
        with pytest.raises(ValidationError):
            self.soft_delete(holder="Someone Else")
        assert self.core.accounts.require_account(self.number).status == AccountStatus.ACTIVE

    def test_session_must_belong_to_account(self):
        """Another customer's session cannot delete this account"""
        other = self.open_account()
        other_session = self.core.security.login(other, "login-pass-1")

        with pytest.raises(AuthorizationError):
            self.soft_delete(session_id=other_session.id)

    def test_wrong_pin_counts_as_failure(self):
        """A wrong PIN is refused and counted on the transaction track"""
        with pytest.raises(AuthorizationError):
            self.soft_delete(pin="9999")
        assert self.core.lockout.get_state(self.number, LockTrack.TRANSACTION).failed_attempts == 1

    def test_deleted_account_rejects_operations(self):
        """Deleted accounts take no money and no logins"""
        self.soft_delete()

        with pytest.raises(StateError):
            self.core.ledger.deposit(self.number, "100")
        with pytest.raises(AuthorizationError):
            self.core.security.login(self.number, "login-pass-1")


class TestAdminLifecycle(CoreTestCase):
    """Test restore, deactivate and purge"""

    def setup_method(self):
        super().setup_method()
        self.admin = self.admin_session()

    def test_restore_clears_locks(self):
        """Restore reopens the account with both tracks unlocked"""
        number = self.open_account()
        session = self.core.security.login(number, "login-pass-1")
        self.core.accounts.soft_delete(session.id, number, "Asha Rao", "ASTN00PUN03",
                                       "asha@example.com", "1234")

        account = self.core.accounts.restore(number, self.admin)

        assert account.status == AccountStatus.ACTIVE
        assert account.is_deleted is False
        assert not account.login_lock.is_locked
        assert not account.transaction_lock.is_locked
        assert self.core.security.login(number, "login-pass-1").account_number == number

    def test_restore_requires_admin(self):
        """Customer sessions cannot restore"""
        number = self.open_account()
        customer = self.core.security.login(number, "login-pass-1")
        with pytest.raises(AuthorizationError):
            self.core.accounts.restore(number, customer.id)

    def test_deactivate_then_deposit_reactivates(self):
        """An INACTIVE account becomes ACTIVE on its next deposit"""
        number = self.open_account()
        assert self.core.accounts.deactivate(number, self.admin).status == AccountStatus.INACTIVE

        self.core.ledger.deposit(number, "100")

        assert self.core.accounts.require_account(number).status == AccountStatus.ACTIVE
        assert self.core.audit_trail.get_events_by_type(AuditEventType.ACCOUNT_REACTIVATED)

    def test_purge_records_closing_transaction(self):
        """Purge pays out the balance as ACCOUNT_CLOSED, then deletes"""
        number = self.open_account(initial_deposit="1500")

        assert self.core.accounts.purge(number, self.admin) is True

        assert self.core.accounts.get_account(number) is None
        closing = [t for t in self.core.transaction_log.list_all()
                   if t.transaction_type == TransactionType.ACCOUNT_CLOSED]
        assert len(closing) == 1
        assert closing[0].amount == Decimal("1500.00")
        assert closing[0].from_account == number

    def test_purge_keeps_account_when_closing_record_rejected(self, monkeypatch):
        """No account disappears without its closing transaction"""
        number = self.open_account(initial_deposit="1500")
        monkeypatch.setattr(self.core.transaction_log, "record", lambda transaction: False)

        with pytest.raises(StateError):
            self.core.accounts.purge(number, self.admin)

        assert self.core.accounts.require_account(number).balance == Decimal("1500.00")

    def test_purge_holds_the_account_lock(self, monkeypatch):
        """The closing record is written while the account is locked"""
        number = self.open_account(initial_deposit="1500")
        seen = []
        original = self.core.transaction_log.record

        def record(transaction):
            seen.append(self.core.locks.active_keys())
            return original(transaction)

        monkeypatch.setattr(self.core.transaction_log, "record", record)
        self.core.accounts.purge(number, self.admin)

        assert seen == [[number]]
        assert len(self.core.locks) == 0

    def test_purge_blocked_by_loan(self):
        """Accounts with an active loan cannot be purged"""
        number = self.open_account()
        self.core.accounts.update_fields(number, {'has_loan': True})
        with pytest.raises(StateError):
            self.core.accounts.purge(number, self.admin)
        assert self.core.accounts.exists(number)
