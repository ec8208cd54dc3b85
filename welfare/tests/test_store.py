"""
Unit Tests for the Welfare Store

Tests cover:
1. Point distribution from company credits
2. Service booking
3. Voucher generation and validation
4. Catalog and roster management
5. Balance invariants
"""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from welfare.models import (
    EmployeeCreate,
    EmployeeUpdate,
    PointDistribution,
    ServiceCategory,
    ServiceCreate,
    ServiceFilters,
    ServiceUpdate,
    TransactionFilters,
    TransactionStatus,
    Voucher,
)
from welfare.service import (
    CompanyNotFoundError,
    EmployeeNotFoundError,
    InsufficientBalanceError,
    PartnerMismatchError,
    ServiceLockedError,
    ServiceNotFoundError,
    TransactionNotFoundError,
    VoucherExpiredError,
    VoucherNotFoundError,
    InvalidStateTransitionError,
)


COMPANY_ID = "comp_1"


def assert_balances_consistent(store):
    for employee in store.storage.employees.values():
        assert employee["available_points"] + employee["used_points"] == employee["total_points"]
    for company in store.storage.companies.values():
        assert company["total_credits"] - company["used_credits"] >= 0


class TestDistributePoints:
    """Tests for moving company credits to employees."""

    def test_distribution_over_available_credits_is_noop(self, store):
        """Test that 12,000 points against 11,500 available changes nothing."""
        before_company = store.get_company(COMPANY_ID)
        before_employee = store.get_employee("emp_1")

        ok = store.distribute_points(COMPANY_ID, [PointDistribution(employee_id="emp_1", points=12000)])

        assert ok is False
        assert store.get_company(COMPANY_ID) == before_company
        assert store.get_employee("emp_1") == before_employee

    def test_successful_distribution(self, store):
        """Test that points land on employees and credits move to used."""
        ok = store.distribute_points(COMPANY_ID, [
            PointDistribution(employee_id="emp_1", points=300),
            PointDistribution(employee_id="emp_2", points=200),
        ])

        assert ok is True
        company = store.get_company(COMPANY_ID)
        assert company.available_credits == 11000
        assert company.used_credits == 4000
        assert company.total_credits == 15000

        emp_1 = store.get_employee("emp_1")
        assert emp_1.available_points == 1050
        assert emp_1.total_points == 1300
        assert emp_1.used_points == 250
        assert_balances_consistent(store)

    def test_total_credits_conserved(self, store):
        """Test that used + available credits does not change on distribution."""
        before = store.get_company(COMPANY_ID)
        store.distribute_points(COMPANY_ID, [PointDistribution(employee_id="emp_3", points=1500)])
        after = store.get_company(COMPANY_ID)

        assert after.used_credits + after.available_credits == before.used_credits + before.available_credits

    def test_distribution_of_exact_available_credits(self, store):
        """Test that the whole balance can be handed out."""
        assert store.distribute_points(COMPANY_ID, [PointDistribution(employee_id="emp_1", points=11500)])
        assert store.get_company(COMPANY_ID).available_credits == 0

    def test_unknown_employee_rejects_whole_distribution(self, store):
        """Test that one unknown employee leaves every balance untouched."""
        ok = store.distribute_points(COMPANY_ID, [
            PointDistribution(employee_id="emp_1", points=100),
            PointDistribution(employee_id="emp_404", points=100),
        ])

        assert ok is False
        assert store.get_employee("emp_1").available_points == 750
        assert store.get_company(COMPANY_ID).available_credits == 11500

    def test_duplicate_entries_are_summed(self, store):
        """Test that repeated employee ids are credited and charged once each."""
        store.distribute_points(COMPANY_ID, [
            PointDistribution(employee_id="emp_2", points=100),
            PointDistribution(employee_id="emp_2", points=50),
        ])

        assert store.get_employee("emp_2").available_points == 600
        assert store.get_company(COMPANY_ID).available_credits == 11350

    def test_strict_distribution_raises(self, store):
        """Test that the strict variant reports the failure reason."""
        with pytest.raises(InsufficientBalanceError):
            store.apply_distribution(COMPANY_ID, [PointDistribution(employee_id="emp_1", points=20000)])
        with pytest.raises(CompanyNotFoundError):
            store.apply_distribution("comp_404", [PointDistribution(employee_id="emp_1", points=1)])

    def test_add_credits(self, store):
        company = store.add_credits(COMPANY_ID, 1000)

        assert company.total_credits == 16000
        assert company.available_credits == 12500


class TestBookService:
    """Tests for booking services with points."""

    def test_book_service_success(self, store):
        """Test that booking debits points and creates a pending transaction."""
        before = len(store.get_transactions_by_employee("emp_1"))

        transaction_id = store.book_service("emp_1", "srv_1")

        assert transaction_id
        employee = store.get_employee("emp_1")
        assert employee.available_points == 550
        assert employee.used_points == 450
        assert employee.total_points == 1000

        transaction = store.get_transaction(transaction_id)
        assert transaction.status == TransactionStatus.PENDING
        assert transaction.points_used == 200
        assert transaction.partner_id == "ptr_1"
        assert transaction.company_id == COMPANY_ID
        assert transaction.voucher_code.startswith("QR_SRV_1_")
        assert len(store.get_transactions_by_employee("emp_1")) == before + 1

    def test_insufficient_points_returns_empty(self, store):
        """Test that emp_3 (200 points) cannot book twice at 200 points."""
        assert store.book_service("emp_3", "srv_1")
        count = len(store.storage.transactions)

        assert store.book_service("emp_3", "srv_1") == ""
        assert len(store.storage.transactions) == count
        assert store.get_employee("emp_3").available_points == 0

    def test_unknown_employee_or_service_returns_empty(self, store):
        assert store.book_service("emp_404", "srv_1") == ""
        assert store.book_service("emp_1", "srv_404") == ""

    def test_strict_booking_raises(self, store):
        with pytest.raises(EmployeeNotFoundError):
            store.create_booking("emp_404", "srv_1")
        with pytest.raises(ServiceNotFoundError):
            store.create_booking("emp_1", "srv_404")

        store.create_booking("emp_3", "srv_1")
        with pytest.raises(InsufficientBalanceError):
            store.create_booking("emp_3", "srv_1")


class TestVouchers:
    """Tests for voucher generation and partner validation."""

    def test_voucher_bound_to_latest_booking(self, store, clock):
        """Test that a voucher references the pending booking and expires in 15 minutes."""
        transaction_id = store.book_service("emp_1", "srv_1")

        voucher = store.generate_qr("emp_1", "srv_1")

        assert voucher.transaction_id == transaction_id
        assert voucher.points_to_redeem == 200
        assert voucher.code == store.get_transaction(transaction_id).voucher_code
        assert (voucher.expires_at - clock()).total_seconds() == 15 * 60
        assert len(store.list_active_vouchers()) == 1

    def test_validate_completes_transaction(self, store, clock):
        """Test that a partner validation settles the booking."""
        transaction_id = store.book_service("emp_1", "srv_1")
        voucher = store.generate_qr("emp_1", "srv_1")
        clock.advance(5)

        assert store.validate_qr(voucher, "ptr_1") is True

        transaction = store.get_transaction(transaction_id)
        assert transaction.status == TransactionStatus.COMPLETED
        assert transaction.redeemed_at == clock()
        assert store.list_active_vouchers() == []

    def test_expired_voucher_rejected(self, store, clock):
        """Test that validation 16 minutes after generation fails."""
        transaction_id = store.book_service("emp_1", "srv_1")
        voucher = store.generate_qr("emp_1", "srv_1")
        clock.advance(16)

        assert store.validate_qr(voucher, "ptr_1") is False
        assert store.get_transaction(transaction_id).status == TransactionStatus.PENDING

        with pytest.raises(VoucherNotFoundError):
            store.redeem_voucher(voucher, "ptr_1")

    def test_expired_voucher_strict_raises(self, store, clock):
        store.book_service("emp_1", "srv_1")
        voucher = store.generate_qr("emp_1", "srv_1")
        clock.advance(16)

        with pytest.raises(VoucherExpiredError):
            store.redeem_voucher(voucher, "ptr_1")

    def test_voucher_valid_at_expiry_instant(self, store, clock):
        """Test that a voucher is still accepted at exactly 15 minutes."""
        transaction_id = store.book_service("emp_1", "srv_1")
        voucher = store.generate_qr("emp_1", "srv_1")
        clock.advance(15)

        assert store.validate_qr(voucher, "ptr_1") is True
        assert store.get_transaction(transaction_id).status == TransactionStatus.COMPLETED

    def test_voucher_rejected_one_second_after_expiry(self, store, clock):
        transaction_id = store.book_service("emp_1", "srv_1")
        voucher = store.generate_qr("emp_1", "srv_1")
        clock.now += timedelta(minutes=15, seconds=1)

        assert store.validate_qr(voucher, "ptr_1") is False
        assert store.get_transaction(transaction_id).status == TransactionStatus.PENDING

    def test_presented_expiry_is_ignored(self, store, clock):
        """Test that expiry is read from the issued voucher, not the presented copy."""
        transaction_id = store.book_service("emp_1", "srv_1")
        voucher = store.generate_qr("emp_1", "srv_1")
        clock.advance(16)
        extended = voucher.model_copy(update={"expires_at": voucher.expires_at + timedelta(hours=1)})

        with pytest.raises(VoucherExpiredError):
            store.redeem_voucher(extended, "ptr_1")
        assert store.validate_qr(extended, "ptr_1") is False
        assert store.get_transaction(transaction_id).status == TransactionStatus.PENDING

    def test_unissued_voucher_rejected(self, store, clock):
        """Test that a voucher the store never issued cannot settle a booking."""
        transaction_id = store.book_service("emp_1", "srv_1")
        unissued = Voucher(
            transaction_id=transaction_id, employee_id="emp_1", service_id="srv_1",
            points_to_redeem=200, code="bogus",
            created_at=clock(), expires_at=clock() + timedelta(days=1),
        )

        assert store.validate_qr(unissued, "ptr_1") is False
        assert store.get_transaction(transaction_id).status == TransactionStatus.PENDING
        with pytest.raises(VoucherNotFoundError):
            store.redeem_voucher(unissued, "ptr_1")

    def test_booking_code_alone_does_not_validate(self, store, clock):
        """Test that knowing the booking's voucher code is not enough without an issued voucher."""
        transaction_id = store.book_service("emp_1", "srv_1")
        unissued = Voucher(
            transaction_id=transaction_id, employee_id="emp_1", service_id="srv_1",
            points_to_redeem=200, code=store.get_transaction(transaction_id).voucher_code,
            created_at=clock(), expires_at=clock() + timedelta(minutes=15),
        )

        assert store.validate_qr(unissued, "ptr_1") is False
        assert store.get_transaction(transaction_id).status == TransactionStatus.PENDING

    def test_expired_vouchers_linger_until_presented(self, store, clock):
        """Test that expiry is only noticed on validation."""
        store.book_service("emp_1", "srv_1")
        voucher = store.generate_qr("emp_1", "srv_1")
        clock.advance(30)

        assert len(store.list_active_vouchers()) == 1

        store.validate_qr(voucher, "ptr_1")
        assert store.list_active_vouchers() == []

    def test_fresh_voucher_survives_expired_presentation(self, store, clock):
        """Test that presenting a stale voucher keeps a newer one for the same booking."""
        transaction_id = store.book_service("emp_1", "srv_1")
        stale = store.generate_qr("emp_1", "srv_1")
        clock.advance(20)
        fresh = store.generate_qr("emp_1", "srv_1")

        assert store.validate_qr(stale, "ptr_1") is False
        assert store.list_active_vouchers() == [fresh]

        assert store.validate_qr(fresh, "ptr_1") is True
        assert store.get_transaction(transaction_id).status == TransactionStatus.COMPLETED

    def test_repeated_generation_is_not_idempotent(self, store):
        store.book_service("emp_1", "srv_1")
        store.generate_qr("emp_1", "srv_1")
        store.generate_qr("emp_1", "srv_1")

        assert len(store.list_active_vouchers()) == 2

    def test_voucher_cannot_be_redeemed_twice(self, store):
        store.book_service("emp_1", "srv_1")
        voucher = store.generate_qr("emp_1", "srv_1")

        assert store.validate_qr(voucher, "ptr_1") is True
        assert store.validate_qr(voucher, "ptr_1") is False
        with pytest.raises(InvalidStateTransitionError):
            store.redeem_voucher(voucher, "ptr_1")

    def test_wrong_partner_rejected(self, store):
        """Test that a partner cannot settle another partner's booking."""
        transaction_id = store.book_service("emp_1", "srv_1")
        voucher = store.generate_qr("emp_1", "srv_1")

        assert store.validate_qr(voucher, "ptr_2") is False
        assert store.get_transaction(transaction_id).status == TransactionStatus.PENDING
        with pytest.raises(PartnerMismatchError):
            store.redeem_voucher(voucher, "ptr_2")

    def test_voucher_without_booking_never_validates(self, store):
        voucher = store.generate_qr("emp_3", "srv_4")

        assert voucher.transaction_id.startswith("qr_")
        assert store.validate_qr(voucher, "ptr_1") is False

    def test_generate_for_unknown_service_raises(self, store):
        with pytest.raises(ServiceNotFoundError):
            store.generate_qr("emp_1", "srv_404")

    def test_generate_for_foreign_transaction_raises(self, store):
        transaction_id = store.book_service("emp_1", "srv_1")

        with pytest.raises(TransactionNotFoundError):
            store.generate_qr("emp_2", "srv_1", transaction_id=transaction_id)


class TestCatalogAndRoster:
    """Tests for employee and service management."""

    def test_add_employee_starts_empty(self, store):
        employee = store.add_employee(COMPANY_ID, EmployeeCreate(
            first_name="Anna", last_name="Neri", email="anna.neri@techcorp.com",
        ))

        assert employee.company_id == COMPANY_ID
        assert employee.total_points == 0
        assert employee.full_name == "Anna Neri"
        assert len(store.list_employees(COMPANY_ID)) == 4

    def test_add_employee_unknown_company(self, store):
        with pytest.raises(CompanyNotFoundError):
            store.add_employee("comp_404", EmployeeCreate(first_name="A", last_name="B", email="a@b.it"))

    def test_update_employee(self, store):
        employee = store.update_employee("emp_2", EmployeeUpdate(is_active=False))

        assert employee.is_active is False
        assert employee.available_points == 450
        assert len(store.list_employees(COMPANY_ID, active_only=True)) == 2

    def test_update_employee_clears_phone(self, store):
        """Test that an explicit null clears the phone and leaves unset fields alone."""
        employee = store.update_employee("emp_1", EmployeeUpdate(phone=None))

        assert employee.phone is None
        assert employee.first_name == "Mario"
        assert employee.email == "mario.rossi@techcorp.com"

    def test_update_employee_rejects_null_required_field(self):
        with pytest.raises(ValidationError):
            EmployeeUpdate(first_name=None)
        with pytest.raises(ValidationError):
            EmployeeUpdate(is_active=None)

    def test_add_and_filter_services(self, store):
        service = store.add_service(ServiceCreate(
            partner_id="ptr_4", name="Corso di Inglese", category=ServiceCategory.EDUCATION,
            points_required=300,
        ))

        assert store.get_service(service.id).name == "Corso di Inglese"
        fitness = store.list_services(ServiceFilters(category=ServiceCategory.FITNESS))
        assert {s.id for s in fitness} == {"srv_1", "srv_4"}
        cheap = store.list_services(ServiceFilters(max_points=100))
        assert {s.id for s in cheap} == {"srv_3", "srv_4"}
        assert [s.id for s in store.list_services(ServiceFilters(search_term="yoga"))] == ["srv_4"]

    def test_redeemed_service_is_locked(self, store):
        """Test that srv_1, redeemed in txn_1, cannot change."""
        with pytest.raises(ServiceLockedError):
            store.update_service("srv_1", ServiceUpdate(points_required=10))

        service = store.update_service("srv_3", ServiceUpdate(points_required=120))
        assert service.points_required == 120


class TestQueries:
    """Tests for transaction listings and summaries."""

    def test_transactions_by_partner(self, store):
        store.book_service("emp_1", "srv_4")

        partner_txns = store.get_transactions_by_partner("ptr_1")
        assert {t.service_id for t in partner_txns} == {"srv_1", "srv_4"}

    def test_list_transactions_filters_and_orders(self, store):
        transaction_id = store.book_service("emp_2", "srv_3")

        pending = store.list_transactions(TransactionFilters(status=TransactionStatus.PENDING))
        assert [t.id for t in pending] == [transaction_id]

        everything = store.list_transactions()
        assert everything[0].id == transaction_id
        assert [t.id for t in everything[1:]] == ["txn_1", "txn_2"]

    def test_summaries(self, store):
        store.book_service("emp_1", "srv_2")

        employee_summary = store.employee_summary("emp_1")
        assert employee_summary.pending_count == 1
        assert employee_summary.completed_count == 1

        company_summary = store.company_summary(COMPANY_ID)
        assert company_summary.active_employees == 3
        assert company_summary.total_transactions == 3
        assert company_summary.points_redeemed == 350
        assert company_summary.points_pending == 150


class TestBalanceInvariants:
    """Tests that every operation keeps employee totals consistent."""

    def test_invariants_hold_across_flow(self, store, clock):
        assert_balances_consistent(store)

        store.distribute_points(COMPANY_ID, [PointDistribution(employee_id="emp_3", points=500)])
        assert_balances_consistent(store)

        store.book_service("emp_3", "srv_1")
        store.book_service("emp_3", "srv_2")
        assert_balances_consistent(store)

        voucher = store.generate_qr("emp_3", "srv_1")
        store.validate_qr(voucher, "ptr_1")
        assert_balances_consistent(store)

        clock.advance(60)
        stale = store.generate_qr("emp_3", "srv_2")
        clock.advance(60)
        store.validate_qr(stale, "ptr_2")
        assert_balances_consistent(store)

        assert store.distribute_points(COMPANY_ID, [PointDistribution(employee_id="emp_1", points=99999)]) is False
        assert_balances_consistent(store)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
