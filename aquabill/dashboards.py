"""Read models for owner and tenant screens, plus reminder composition."""
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional
import logging

from sqlalchemy import func, select

from aquabill.billing_engine import load_bill, load_bill_property
from aquabill.directory import Caller, ensure_property_owner, require_owner, tenant_flat_id
from aquabill.events import EventBus, MessageUnread
from aquabill.flat_registry import load_flat, load_parent_property
from aquabill.models.database import Account, Reading
from aquabill.models.enums import BillStatus
from aquabill.property_registry import PropertyRegistry
from aquabill.storage_manager import StorageManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentReminder:
    bill_id: int
    subject: str
    body: str
    tenant_name: Optional[str]
    email: Optional[str]
    phone: Optional[str]


class Dashboards:
    def __init__(self, storage: StorageManager, events: EventBus, properties: PropertyRegistry):
        self.storage = storage
        self.events = events
        self.properties = properties

    def owner_overview(self, caller: Caller) -> Dict:
        """Properties with occupancy plus the number of unpaid bills"""
        require_owner(caller)
        summaries = self.properties.list_properties(caller)
        property_ids = [s["property"].id for s in summaries]

        with self.storage.get_db_session() as db:
            unpaid = db.scalar(
                select(func.count(Reading.id)).where(
                    Reading.property_id.in_(property_ids),
                    Reading.status == BillStatus.PENDING.value,
                )
            ) or 0

        return {
            "properties": summaries,
            "total_properties": len(summaries),
            "total_flats": sum(s["total_flats"] for s in summaries),
            "occupied_flats": sum(s["occupied_flats"] for s in summaries),
            "unpaid_bills": unpaid,
        }

    def tenant_overview(self, caller: Caller) -> Dict:
        with self.storage.get_db_session() as db:
            flat = load_flat(db, tenant_flat_id(db, caller))
            property_obj = load_parent_property(db, flat)
            bills = db.scalars(
                select(Reading)
                .where(Reading.flat_id == flat.id)
                .order_by(Reading.created_at.desc(), Reading.id.desc())
            ).all()

        total_pending = sum(
            (Decimal(b.bill_amount) for b in bills if b.status == BillStatus.PENDING.value),
            Decimal("0.00"),
        )
        return {
            "flat": flat,
            "property": property_obj,
            "bills": bills,
            "total_pending": total_pending,
        }

    def bill_notifications(self, caller: Caller) -> List[Dict]:
        """One entry per pending bill of the tenant's flat"""
        with self.storage.get_db_session() as db:
            flat_id = tenant_flat_id(db, caller)
            bills = db.scalars(
                select(Reading)
                .where(Reading.flat_id == flat_id, Reading.status == BillStatus.PENDING.value)
                .order_by(Reading.created_at.desc(), Reading.id.desc())
            ).all()

        return [
            {
                "bill_id": bill.id,
                "type": "new_bill",
                "message": f"New water bill for {bill.bill_month}",
                "amount": bill.bill_amount,
                "created_at": bill.created_at,
            }
            for bill in bills
        ]

    def payment_reminder(self, caller: Caller, bill_id: int) -> PaymentReminder:
        """Text an owner sends to chase a pending bill"""
        with self.storage.get_db_session() as db:
            bill = load_bill(db, bill_id)
            property_obj = load_bill_property(db, bill)
            ensure_property_owner(caller, property_obj)
            flat = load_flat(db, bill.flat_id)
            tenant = db.get(Account, flat.tenant_id) if flat.tenant_id else None

        tenant_name = tenant.name if tenant else flat.tenant_name
        body = "\n".join([
            f"Dear {tenant_name or 'Tenant'},",
            "",
            "This is a reminder for your pending water bill payment.",
            "",
            f"Property: {property_obj.name}",
            f"Flat: {flat.flat_number}",
            f"Bill Month: {bill.bill_month}",
            f"Amount Due: {Decimal(bill.bill_amount):.2f}",
            f"Due Date: {bill.due_date:%Y-%m-%d}",
            "",
            "Please make the payment at your earliest convenience.",
            "",
            "Thank you,",
            f"{property_obj.name} Management",
        ])
        return PaymentReminder(
            bill_id=bill.id,
            subject=f"Water Bill Payment Reminder - {bill.bill_month}",
            body=body,
            tenant_name=tenant_name,
            email=tenant.email if tenant else None,
            phone=tenant.phone if tenant else flat.tenant_phone,
        )

    def report_unread_messages(self, flat_id: int, count: int):
        """Hook for the chat service; the core only forwards the count."""
        with self.storage.get_db_session() as db:
            load_flat(db, flat_id)
        self.events.publish(MessageUnread(flat_id=flat_id, count=max(0, int(count))))
