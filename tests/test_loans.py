"""
Test suite for loans module

EMI arithmetic, request submission rules, the loan state machine and
repayment with exactly one LOAN_REPAYMENT transaction per closure.
"""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from bank_ledger.errors import (
    ConflictError, InsufficientFundsError, StateError, ValidationError
)
from bank_ledger.loans import (
    LoanStatus, calculate_emi, instalments_for, interest_rate_for, required_balance_for
)
from bank_ledger.transactions import TransactionType

from support import CoreTestCase


class TestEMI:
    """Test EMI arithmetic"""

    @pytest.mark.parametrize("loan_type,rate", [
        ("Home Loan", Decimal("8.0")),
        ("education loan", Decimal("6.5")),
        ("PERSONAL LOAN", Decimal("11.0")),
        ("Car Loan", Decimal("10.0")),
        (None, Decimal("10.0")),
    ])
    def test_interest_rates(self, loan_type, rate):
        """Each loan type has its own rate; unknown types get 10%"""
        assert interest_rate_for(loan_type) == rate

    def test_instalments(self):
        """Plans map to instalment counts, unknown plans to monthly"""
        assert instalments_for("MONTHLY") == 12
        assert instalments_for("quarterly") == 4
        assert instalments_for("YEARLY") == 1
        assert instalments_for("fortnightly") == 12

    def test_simple_interest_quote(self):
        """Interest is simple: principal x rate for one year"""
        quote = calculate_emi("12000", "Home Loan", "QUARTERLY")
        assert quote.interest == Decimal("960.00")
        assert quote.total_payable == Decimal("12960.00")
        assert quote.instalments == 4
        assert quote.emi == Decimal("3240.00")

    def test_rate_override(self):
        """An explicit rate wins over the type default"""
        quote = calculate_emi("4000", "Home Loan", "YEARLY", interest_rate=Decimal("10"))
        assert quote.total_payable == Decimal("4400.00")
        assert quote.emi == Decimal("4400.00")

    def test_required_balance_rounds_half_up(self):
        """A quarter of the amount, rounded half up to paisa"""
        assert required_balance_for(Decimal("4000")) == Decimal("1000.00")
        assert required_balance_for(Decimal("0.10")) == Decimal("0.03")


class LoanTestCase(CoreTestCase):
    """Core plus a helper that files a valid loan request"""

    def submit(self, number, amount="4000", loan_type="Car Loan", **overrides):
        account = self.core.accounts.require_account(number)
        kwargs = dict(
            account_number=number,
            amount=amount,
            loan_type=loan_type,
            emi_plan="MONTHLY",
            government_id_number=account.government_id_number,
            government_id_proof="proofs/aadhar.pdf",
        )
        kwargs.update(overrides)
        return self.core.loans.submit_request(**kwargs)

    def approved_loan(self, number):
        request = self.submit(number)
        self.core.loans.approve(request.id, "ops")
        return request

    def loan_transactions(self, number, kind):
        return [t for t in self.core.transaction_log.list_for_account(number)
                if t.transaction_type == kind]


class TestSubmission(LoanTestCase):
    """Test filing loan requests"""

    def test_submit(self):
        """A valid request is PENDING at the type's rate and acknowledged"""
        number = self.open_account()
        request = self.submit(number)

        assert request.status == LoanStatus.PENDING
        assert request.interest_rate == Decimal("10.0")
        assert request.emi_plan == "MONTHLY"
        assert self.core.loans.list_pending()[0].id == request.id
        assert self.core.gateway.outbox[-1]["subject"] == "Loan request received"

    def test_balance_must_cover_quarter(self):
        """The balance must be at least a quarter of the amount"""
        number = self.open_account(initial_deposit="1000")
        with pytest.raises(InsufficientFundsError):
            self.submit(number, amount="4000.04")
        assert self.submit(number, amount="4000").status == LoanStatus.PENDING

    def test_government_id_must_match(self):
        """The ID must be the one on the account"""
        number = self.open_account()
        with pytest.raises(ValidationError):
            self.submit(number, government_id_number="999999999999")

    def test_proof_required(self):
        """A proof document reference is mandatory"""
        with pytest.raises(ValidationError):
            self.submit(self.open_account(), government_id_proof=None)

    def test_one_request_at_a_time(self):
        """A second request while one is pending is a conflict"""
        number = self.open_account()
        self.submit(number)
        with pytest.raises(ConflictError):
            self.submit(number, amount="1000")

    def test_interest_override(self):
        """An explicit rate replaces the type's default"""
        request = self.submit(self.open_account(), interest_rate="7.25")
        assert request.interest_rate == Decimal("7.25")


class TestStateMachine(LoanTestCase):
    """Test approve and reject transitions"""

    def test_approve_credits_principal(self):
        """Approval credits the principal and records one LOAN_CREDIT"""
        number = self.open_account()
        request = self.submit(number)

        approved = self.core.loans.approve(request.id, "ops", "fine")

        account = self.core.accounts.require_account(number)
        assert approved.status == LoanStatus.APPROVED
        assert approved.processed_by == "ops"
        assert account.balance == Decimal("9000.00")
        assert account.has_loan is True
        assert account.loan_total_due == Decimal("4400.00")
        assert account.loan_taken_date is not None
        assert account.loan_last_paid_date is None
        credits = self.loan_transactions(number, TransactionType.LOAN_CREDIT)
        assert len(credits) == 1
        assert credits[0].category == "Loan Sanctioned"

    def test_reject_clears_loan_fields(self):
        """Rejection stores the comment and leaves the balance alone"""
        number = self.open_account()
        request = self.submit(number)

        rejected = self.core.loans.reject(request.id, "ops", "insufficient history")

        account = self.core.accounts.require_account(number)
        assert rejected.status == LoanStatus.REJECTED
        assert rejected.admin_comment == "insufficient history"
        assert account.has_loan is False
        assert account.balance == Decimal("5000.00")

    def test_reject_needs_comment(self):
        """A blank rejection comment is refused"""
        request = self.submit(self.open_account())
        with pytest.raises(ValidationError):
            self.core.loans.reject(request.id, "ops", " ")

    def test_terminal_states(self):
        """REJECTED and CLOSED accept no further transitions"""
        number = self.open_account()
        rejected = self.submit(number)
        self.core.loans.reject(rejected.id, "ops", "no")
        with pytest.raises(StateError):
            self.core.loans.approve(rejected.id, "ops")

        approved = self.submit(number)
        self.core.loans.approve(approved.id, "ops")
        with pytest.raises(StateError):
            self.core.loans.approve(approved.id, "ops")
        with pytest.raises(StateError):
            self.core.loans.reject(approved.id, "ops", "too late")

        self.core.loans.close_early(number)
        closed = self.core.loans.require_request(approved.id)
        assert closed.status == LoanStatus.CLOSED
        with pytest.raises(StateError):
            self.core.loans.approve(closed.id, "ops")

    def test_request_locks_are_released(self):
        """Per-request locks do not outlive the transition"""
        self.approved_loan(self.open_account())
        assert len(self.core.locks) == 0


class TestRepayment(LoanTestCase):
    """Test early closure and partial repayment"""

    def setup_method(self):
        super().setup_method()
        self.number = self.open_account()

    def test_early_closure_single_repayment(self):
        """Early closure pays the whole due as one LOAN_REPAYMENT"""
        self.approved_loan(self.number)

        transaction = self.core.loans.close_early(self.number)

        account = self.core.accounts.require_account(self.number)
        assert transaction.amount == Decimal("4400.00")
        assert transaction.category == "Loan Early Closure"
        assert account.balance == Decimal("4600.00")
        assert account.has_loan is False
        assert account.loan_total_due == Decimal("0.00")
        assert account.loan_last_paid_date is not None
        assert len(self.loan_transactions(self.number, TransactionType.LOAN_REPAYMENT)) == 1

    def test_early_closure_needs_funds(self):
        """Without the full due in balance nothing changes"""
        number = self.open_account(initial_deposit="1000")
        self.approved_loan(number)
        self.core.ledger.withdraw(number, "1000")

        with pytest.raises(InsufficientFundsError):
            self.core.loans.close_early(number)
        assert self.core.accounts.require_account(number).has_loan is True
        assert self.loan_transactions(number, TransactionType.LOAN_REPAYMENT) == []

    def test_close_without_loan(self):
        """Closing when there is no loan is a state error"""
        with pytest.raises(StateError):
            self.core.loans.close_early(self.number)

    def test_partial_repayment(self):
        """A partial repayment reduces the due and keeps the loan open"""
        self.approved_loan(self.number)

        transaction = self.core.loans.repay(self.number, "1400")

        account = self.core.accounts.require_account(self.number)
        assert transaction.category == "Loan Repayment"
        assert account.loan_total_due == Decimal("3000.00")
        assert account.has_loan is True
        assert account.balance == Decimal("7600.00")

    def test_repaying_remainder_closes_loan(self):
        """Paying off the rest closes the request"""
        request = self.approved_loan(self.number)
        self.core.loans.repay(self.number, "1400")
        self.core.loans.repay(self.number, "3000")

        assert self.core.accounts.require_account(self.number).has_loan is False
        assert self.core.loans.require_request(request.id).status == LoanStatus.CLOSED
        assert len(self.loan_transactions(self.number, TransactionType.LOAN_REPAYMENT)) == 2

    def test_overpayment_refused(self):
        """Repaying more than is due is refused"""
        self.approved_loan(self.number)
        with pytest.raises(ValidationError):
            self.core.loans.repay(self.number, "4400.01")

    def test_new_loan_after_closure(self):
        """A closed loan frees the account for a new request"""
        self.approved_loan(self.number)
        self.core.loans.close_early(self.number)
        assert self.submit(self.number).status == LoanStatus.PENDING

    def test_auto_repayment_flag(self):
        """Auto repayment needs an active loan"""
        with pytest.raises(StateError):
            self.core.loans.set_auto_repayment(self.number, True)

        self.approved_loan(self.number)
        self.core.loans.set_auto_repayment(self.number, True)
        assert self.core.accounts.require_account(self.number).auto_repayment_enabled is True


class TestReviewSuggestion(CoreTestCase):
    """Test the approval hint shown to admins"""

    def test_review_for_thin_history(self):
        """Little deposit history suggests REVIEW"""
        suggestion = self.core.loans.review_suggestion(self.open_account())
        assert suggestion["suggestion"] == "REVIEW"
        assert suggestion["recent_deposits"] == "5000.00"

    def test_approve_for_strong_history(self):
        """Healthy balance and deposits suggest APPROVE"""
        number = self.open_account(initial_deposit="15000")
        self.core.ledger.deposit(number, "6000")
        suggestion = self.core.loans.review_suggestion(number)
        assert suggestion["suggestion"] == "APPROVE"

    def test_old_deposits_are_ignored(self):
        """Deposits outside the window do not count"""
        number = self.open_account(initial_deposit="25000")
        later = datetime.now(timezone.utc) + timedelta(days=365)
        assert self.core.loans.review_suggestion(number, now=later)["suggestion"] == "REVIEW"
