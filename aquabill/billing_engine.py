"""Meter readings and the bills derived from them.

A reading row is the bill. ``record_reading`` is the only place bills are
created; everything the bill needs (previous reading, free allowance, rates)
is re-read from the store inside the transaction, never taken from the
caller.
"""
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import List, Optional
import logging

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from aquabill.config.settings import settings
from aquabill.directory import Caller, ensure_flat_access, ensure_property_owner
from aquabill.errors import ConsistencyError, NotFoundError, ValidationError
from aquabill.events import EventBus, NewBillCreated
from aquabill.models.database import BillCorrection, Flat, Property, Reading
from aquabill.models.enums import BillStatus
from aquabill.storage_manager import StorageManager
from aquabill.utils.money import Number, non_negative, round_currency, to_decimal
from aquabill.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


@dataclass(frozen=True)
class BillFigures:
    previous_reading: Decimal
    current_reading: Decimal
    units_consumed: Decimal
    free_water_units: Decimal
    billable_units: Decimal
    bill_amount: Decimal


def compute_bill(
    previous_reading: Decimal,
    current_reading: Decimal,
    free_water_units: Decimal,
    rate_per_unit: Decimal,
    fixed_charge: Decimal,
) -> BillFigures:
    """Consumption and amount for one reading.

    >>> compute_bill(Decimal(100), Decimal(150), Decimal(10), Decimal(5), Decimal(50)).bill_amount
    Decimal('250.00')
    """
    if current_reading < previous_reading:
        raise ValidationError(
            f"Reading {current_reading} is below the previous reading {previous_reading}",
            kind="reading_below_previous",
        )
    units_consumed = current_reading - previous_reading
    billable_units = max(ZERO, units_consumed - free_water_units)
    bill_amount = round_currency(billable_units * rate_per_unit + fixed_charge)
    return BillFigures(
        previous_reading=previous_reading,
        current_reading=current_reading,
        units_consumed=units_consumed,
        free_water_units=free_water_units,
        billable_units=billable_units,
        bill_amount=bill_amount,
    )


def latest_reading(db: Session, flat_id: int) -> Optional[Reading]:
    """Most recent reading of a flat. Always queried, never cached."""
    return db.scalars(
        select(Reading)
        .where(Reading.flat_id == flat_id)
        .order_by(Reading.created_at.desc(), Reading.id.desc())
        .limit(1)
    ).first()


def load_bill(db: Session, bill_id: int) -> Reading:
    bill = db.get(Reading, bill_id)
    if bill is None:
        raise NotFoundError(f"Bill {bill_id} not found", kind="bill_not_found")
    return bill


def load_bill_property(db: Session, bill: Reading) -> Property:
    property_obj = db.get(Property, bill.property_id)
    if property_obj is None:
        logger.error(f"Bill {bill.id} references missing property {bill.property_id}")
        raise ConsistencyError(
            f"Property {bill.property_id} of bill {bill.id} is missing",
            kind="missing_property",
        )
    return property_obj


class BillingEngine:
    def __init__(self, storage: StorageManager, events: EventBus):
        self.storage = storage
        self.events = events

    def record_reading(self, caller: Caller, flat_id: int, current_reading: Number, bill_month: str) -> Reading:
        """Record a meter reading and issue its bill"""
        current = non_negative(current_reading, "current_reading")
        if not bill_month or not str(bill_month).strip():
            raise ValidationError("Bill month is required", kind="missing_field")

        # Imported here to avoid a cycle: flat_registry uses latest_reading
        from aquabill.flat_registry import load_flat, load_parent_property

        with self.storage.transaction() as db:
            flat = load_flat(db, flat_id)
            property_obj = load_parent_property(db, flat)
            ensure_property_owner(caller, property_obj)

            seen_version = flat.reading_version
            previous = latest_reading(db, flat.id)
            previous_value = to_decimal(previous.current_reading) if previous is not None else ZERO

            figures = compute_bill(
                previous_reading=previous_value,
                current_reading=current,
                free_water_units=to_decimal(flat.free_water_units or 0),
                rate_per_unit=to_decimal(property_obj.water_rate_per_unit),
                fixed_charge=to_decimal(property_obj.fixed_charge),
            )

            claimed = db.execute(
                update(Flat)
                .where(Flat.id == flat.id, Flat.reading_version == seen_version)
                .values(reading_version=seen_version + 1)
                .execution_options(synchronize_session=False)
            ).rowcount
            if not claimed:
                raise ValidationError(
                    "Another reading was recorded for this flat meanwhile; reload and retry",
                    kind="stale_previous_reading",
                )

            now = utcnow()
            bill = Reading(
                flat_id=flat.id,
                property_id=property_obj.id,
                previous_reading=figures.previous_reading,
                current_reading=figures.current_reading,
                units_consumed=figures.units_consumed,
                free_water_units=figures.free_water_units,
                billable_units=figures.billable_units,
                bill_amount=figures.bill_amount,
                bill_month=str(bill_month).strip(),
                status=BillStatus.PENDING.value,
                due_date=now + timedelta(days=settings.bill_due_days),
                created_at=now,
            )
            db.add(bill)
            db.flush()

        logger.info(
            f"Recorded reading {figures.current_reading} for flat {flat_id}: "
            f"{figures.units_consumed} units, {figures.billable_units} billable, amount {figures.bill_amount}"
        )
        self.events.publish(NewBillCreated(flat_id=flat_id, bill_id=bill.id, amount=bill.bill_amount))
        self.events.changed("bill", bill.id, "created")
        return bill

    def correct_bill_amount(self, caller: Caller, bill_id: int, new_amount: Number) -> Reading:
        """Owner override of the amount; consumption figures stay as recorded."""
        amount = round_currency(non_negative(new_amount, "bill_amount", places=None))

        with self.storage.transaction() as db:
            bill = load_bill(db, bill_id)
            ensure_property_owner(caller, load_bill_property(db, bill))

            db.add(BillCorrection(
                bill_id=bill.id,
                previous_amount=bill.bill_amount,
                new_amount=amount,
                corrected_by=caller.account_id,
            ))
            previous_amount = bill.bill_amount
            bill.bill_amount = amount
            bill.updated_at = utcnow()

        logger.info(f"Corrected bill {bill_id} amount from {previous_amount} to {amount}")
        self.events.changed("bill", bill_id, "updated")
        return bill

    def delete_bill(self, caller: Caller, bill_id: int):
        with self.storage.transaction() as db:
            bill = load_bill(db, bill_id)
            ensure_property_owner(caller, load_bill_property(db, bill))
            flat_id = bill.flat_id
            db.delete(bill)
            db.execute(
                update(Flat)
                .where(Flat.id == flat_id)
                .values(reading_version=Flat.reading_version + 1)
                .execution_options(synchronize_session=False)
            )

        logger.info(f"Deleted bill {bill_id} of flat {flat_id}")
        self.events.changed("bill", bill_id, "deleted")

    def get_bill(self, caller: Caller, bill_id: int) -> Reading:
        with self.storage.get_db_session() as db:
            bill = load_bill(db, bill_id)
            self._ensure_access(db, caller, bill.flat_id)
            return bill

    def latest_bill(self, caller: Caller, flat_id: int) -> Optional[Reading]:
        with self.storage.get_db_session() as db:
            self._ensure_access(db, caller, flat_id)
            return latest_reading(db, flat_id)

    def list_bills(self, caller: Caller, flat_id: int) -> List[Reading]:
        with self.storage.get_db_session() as db:
            self._ensure_access(db, caller, flat_id)
            return db.scalars(
                select(Reading)
                .where(Reading.flat_id == flat_id)
                .order_by(Reading.created_at.desc(), Reading.id.desc())
            ).all()

    @staticmethod
    def _ensure_access(db: Session, caller: Caller, flat_id: int):
        flat = db.get(Flat, flat_id)
        if flat is None:
            raise NotFoundError(f"Flat {flat_id} not found", kind="flat_not_found")
        ensure_flat_access(db, caller, flat)
