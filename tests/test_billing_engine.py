"""Tests for meter readings and bill computation."""

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from decimal import Decimal
from threading import Barrier

import pytest
from sqlalchemy import delete, func, select

from aquabill.bill_lifecycle import GatewayResult
from aquabill.billing_engine import compute_bill
from aquabill.errors import AuthorizationError, BillingError, ConsistencyError, ValidationError
from aquabill.events import NewBillCreated
from aquabill.models.database import BillCorrection, Property, Reading


def _count_readings(services, flat_id) -> int:
    with services.storage.get_db_session() as db:
        return db.scalar(select(func.count(Reading.id)).where(Reading.flat_id == flat_id))


class TestComputeBill:
    """Unit tests for the billing formula."""

    def test_formula(self) -> None:
        figures = compute_bill(Decimal(100), Decimal(150), Decimal(10), Decimal(5), Decimal(50))
        assert figures.units_consumed == Decimal(50)
        assert figures.billable_units == Decimal(40)
        assert figures.bill_amount == Decimal("250.00")

    def test_allowance_floor(self) -> None:
        """Consumption below the allowance bills only the fixed charge."""
        figures = compute_bill(Decimal(100), Decimal(105), Decimal(10), Decimal(5), Decimal(50))
        assert figures.units_consumed == Decimal(5)
        assert figures.billable_units == Decimal(0)
        assert figures.bill_amount == Decimal("50.00")

    def test_rounds_half_up_to_cent(self) -> None:
        figures = compute_bill(Decimal(0), Decimal("0.5"), Decimal(0), Decimal("0.25"), Decimal(0))
        assert figures.bill_amount == Decimal("0.13")

    def test_rejects_lower_reading(self) -> None:
        with pytest.raises(ValidationError):
            compute_bill(Decimal(150), Decimal(100), Decimal(0), Decimal(5), Decimal(50))


class TestRecordReading:
    def test_first_reading_starts_from_zero(self, services, owner, flat) -> None:
        bill = services.billing.record_reading(owner, flat.id, 42, "Jan 2025")
        assert bill.previous_reading == Decimal(0)
        assert bill.units_consumed == Decimal(42)
        assert bill.bill_amount == Decimal("260.00")
        assert bill.status == "pending"

    def test_worked_example(self, services, owner, flat) -> None:
        services.billing.record_reading(owner, flat.id, 100, "Jan 2025")
        services.flats.set_free_allowance(owner, flat.id, 10)

        bill = services.billing.record_reading(owner, flat.id, 150, "Feb 2025")

        assert bill.previous_reading == Decimal(100)
        assert bill.units_consumed == Decimal(50)
        assert bill.free_water_units == Decimal(10)
        assert bill.billable_units == Decimal(40)
        assert bill.bill_amount == Decimal("250.00")

    def test_due_in_fifteen_days(self, services, owner, flat) -> None:
        bill = services.billing.record_reading(owner, flat.id, 10, "Jan 2025")
        assert bill.due_date - bill.created_at == timedelta(days=15)

    def test_lower_reading_rejected_without_record(self, services, owner, flat) -> None:
        services.billing.record_reading(owner, flat.id, 100, "Jan 2025")

        with pytest.raises(ValidationError) as exc:
            services.billing.record_reading(owner, flat.id, 99, "Feb 2025")

        assert exc.value.kind == "reading_below_previous"
        assert _count_readings(services, flat.id) == 1

    def test_negative_reading_rejected(self, services, owner, flat) -> None:
        with pytest.raises(ValidationError):
            services.billing.record_reading(owner, flat.id, -1, "Jan 2025")
        assert _count_readings(services, flat.id) == 0

    def test_equal_reading_allowed(self, services, owner, flat) -> None:
        services.billing.record_reading(owner, flat.id, 100, "Jan 2025")
        bill = services.billing.record_reading(owner, flat.id, 100, "Feb 2025")
        assert bill.units_consumed == Decimal(0)
        assert bill.bill_amount == Decimal("50.00")

    def test_allowance_changes_are_not_retroactive(self, services, owner, flat) -> None:
        first = services.billing.record_reading(owner, flat.id, 100, "Jan 2025")
        services.flats.set_free_allowance(owner, flat.id, 30)
        services.properties.update_rates(owner, flat.property_id, 10, 0)

        bills = services.billing.list_bills(owner, flat.id)
        assert [b.id for b in bills] == [first.id]
        assert bills[0].free_water_units == Decimal(0)
        assert bills[0].bill_amount == Decimal("550.00")

    def test_other_owner_cannot_record(self, services, other_owner, flat) -> None:
        with pytest.raises(AuthorizationError):
            services.billing.record_reading(other_owner, flat.id, 10, "Jan 2025")

    def test_missing_property_is_consistency_error(self, services, owner, flat) -> None:
        with services.storage.transaction() as db:
            db.execute(delete(Property).where(Property.id == flat.property_id))

        with pytest.raises(ConsistencyError):
            services.billing.record_reading(owner, flat.id, 10, "Jan 2025")
        assert _count_readings(services, flat.id) == 0

    def test_publishes_new_bill_event(self, services, owner, flat) -> None:
        received = []
        services.events.subscribe(NewBillCreated, received.append)

        bill = services.billing.record_reading(owner, flat.id, 20, "Jan 2025")

        assert len(received) == 1
        assert received[0].flat_id == flat.id
        assert received[0].bill_id == bill.id
        assert received[0].amount == Decimal("150.00")

    def test_concurrent_submissions_stay_monotonic(self, services, owner, flat) -> None:
        services.billing.record_reading(owner, flat.id, 100, "Jan 2025")
        barrier = Barrier(2)

        def submit(value):
            barrier.wait()
            try:
                return services.billing.record_reading(owner, flat.id, value, "Feb 2025")
            except BillingError as e:
                return e

        with ThreadPoolExecutor(max_workers=2) as pool:
            outcomes = list(pool.map(submit, [150, 120]))

        assert any(isinstance(o, Reading) for o in outcomes)
        for outcome in outcomes:
            if isinstance(outcome, BillingError):
                assert isinstance(outcome, ValidationError)

        chain = list(reversed(services.billing.list_bills(owner, flat.id)))
        for earlier, later in zip(chain, chain[1:]):
            assert later.previous_reading == earlier.current_reading
            assert later.current_reading >= earlier.current_reading


class TestCorrectionAndDeletion:
    def test_correct_amount_keeps_units(self, services, owner, bill) -> None:
        corrected = services.billing.correct_bill_amount(owner, bill.id, "275.555")

        assert corrected.bill_amount == Decimal("275.56")
        assert corrected.units_consumed == bill.units_consumed
        assert corrected.updated_at is not None
        with services.storage.get_db_session() as db:
            audit = db.scalars(select(BillCorrection).where(BillCorrection.bill_id == bill.id)).one()
        assert audit.previous_amount == Decimal("300.00")
        assert audit.new_amount == Decimal("275.56")

    def test_correct_paid_bill(self, services, owner, tenant, bill) -> None:
        services.lifecycle.settle_with_gateway(tenant, bill.id, GatewayResult("pay_1", True))
        corrected = services.billing.correct_bill_amount(owner, bill.id, 10)
        assert corrected.status == "paid"
        assert corrected.bill_amount == Decimal("10.00")

    def test_negative_correction_rejected(self, services, owner, bill) -> None:
        with pytest.raises(ValidationError):
            services.billing.correct_bill_amount(owner, bill.id, -5)

    def test_tenant_cannot_correct(self, services, tenant, bill) -> None:
        with pytest.raises(AuthorizationError):
            services.billing.correct_bill_amount(tenant, bill.id, 1)

    def test_delete_latest_falls_back_to_prior(self, services, owner, flat, bill) -> None:
        services.billing.delete_bill(owner, bill.id)

        latest = services.billing.latest_bill(owner, flat.id)
        assert latest is not None
        assert latest.current_reading == Decimal(100)

        # Monotonic check now runs against the remaining reading
        again = services.billing.record_reading(owner, flat.id, 120, "Feb 2025")
        assert again.previous_reading == Decimal(100)

    def test_delete_only_bill_leaves_none(self, services, owner, flat) -> None:
        only = services.billing.record_reading(owner, flat.id, 5, "Jan 2025")
        services.billing.delete_bill(owner, only.id)
        assert services.billing.latest_bill(owner, flat.id) is None

    def test_tenant_reads_only_own_flat(self, services, owner, property_obj, tenant, bill) -> None:
        other_flat = services.flats.add_flat(owner, property_obj.id, "102")
        assert services.billing.get_bill(tenant, bill.id).id == bill.id
        with pytest.raises(AuthorizationError):
            services.billing.list_bills(tenant, other_flat.id)


class TestFractionalValues:
    """Rates, allowances and readings keep their decimals through the store."""

    def test_fractional_rate_used_as_set(self, services, owner) -> None:
        created = services.properties.create_property(owner, "Quarter Rate", None, None, "QTR", "0.125", 0)
        flat = services.flats.add_flat(owner, created.id, "1")

        stored = services.properties.get_property(owner, created.id)
        bill = services.billing.record_reading(owner, flat.id, 1000, "Jan 2025")

        assert stored.water_rate_per_unit == Decimal("0.125")
        assert bill.bill_amount == Decimal("125.00")

    def test_reading_slightly_above_previous(self, services, owner, flat) -> None:
        services.billing.record_reading(owner, flat.id, "100.555", "Jan 2025")

        bill = services.billing.record_reading(owner, flat.id, "100.556", "Feb 2025")

        assert bill.previous_reading == Decimal("100.555")
        assert bill.units_consumed == Decimal("0.001")
        stored = services.billing.get_bill(owner, bill.id)
        assert stored.current_reading == Decimal("100.556")

    def test_fractional_allowance_round_trips(self, services, owner, flat) -> None:
        services.flats.set_free_allowance(owner, flat.id, "2.375")
        services.billing.record_reading(owner, flat.id, 10, "Jan 2025")

        bill = services.billing.latest_bill(owner, flat.id)
        assert bill.free_water_units == Decimal("2.375")
        assert bill.billable_units == Decimal("7.625")

    def test_reading_finer_than_store_rejected(self, services, owner, flat) -> None:
        with pytest.raises(ValidationError) as exc:
            services.billing.record_reading(owner, flat.id, "1.00001", "Jan 2025")

        assert exc.value.kind == "too_many_decimals"
        assert _count_readings(services, flat.id) == 0

    def test_fixed_charge_limited_to_cents(self, services, owner) -> None:
        with pytest.raises(ValidationError) as exc:
            services.properties.create_property(owner, "Odd Charge", None, None, "ODD", 1, "10.005")
        assert exc.value.kind == "too_many_decimals"
