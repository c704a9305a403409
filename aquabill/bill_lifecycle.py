"""Bill status transitions and the payments that drive them.

    pending --gateway settlement--> paid
    pending --proof submitted----> pending_verification --owner confirms--> paid

Every transition is a compare-and-set on ``readings.status`` so two racing
transitions on the same bill cannot both apply. Payments are idempotent per
gateway reference or client idempotency key.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional
import logging

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from aquabill.billing_engine import load_bill, load_bill_property
from aquabill.config.settings import settings
from aquabill.directory import Caller, ensure_flat_access, ensure_property_owner, require_tenant, tenant_flat_id
from aquabill.errors import AuthorizationError, ConflictError, ExternalError, NotFoundError, ValidationError
from aquabill.events import EventBus
from aquabill.models.database import Flat, Payment, Reading
from aquabill.models.enums import BillStatus, PaymentMethod, PaymentStatus
from aquabill.storage_manager import StorageManager
from aquabill.utils.file_storage import FileStorage
from aquabill.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

PDF_CONTENT_TYPE = "application/pdf"


@dataclass(frozen=True)
class CheckoutRequest:
    """What the payment widget needs to take a payment for a bill"""
    bill_id: int
    amount: Decimal
    amount_minor: int
    currency: str
    description: str


@dataclass(frozen=True)
class GatewayResult:
    external_reference: str
    success: bool


def _transition(db: Session, bill_id: int, expected: BillStatus, target: BillStatus, **stamps) -> bool:
    result = db.execute(
        update(Reading)
        .where(Reading.id == bill_id, Reading.status == expected.value)
        .values(status=target.value, **stamps)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _invalid_state(bill_id: int, action: str) -> ConflictError:
    return ConflictError(f"Bill {bill_id} cannot be {action} in its current state", kind="invalid_bill_state")


class BillLifecycle:
    def __init__(self, storage: StorageManager, events: EventBus, file_storage: FileStorage):
        self.storage = storage
        self.events = events
        self.file_storage = file_storage

    def build_checkout(self, caller: Caller, bill_id: int) -> CheckoutRequest:
        with self.storage.get_db_session() as db:
            bill = self._tenant_bill(db, caller, bill_id)
            if bill.status != BillStatus.PENDING.value:
                raise _invalid_state(bill_id, "paid")
            amount = Decimal(bill.bill_amount)
            return CheckoutRequest(
                bill_id=bill.id,
                amount=amount,
                amount_minor=int(amount * 100),
                currency=settings.currency,
                description=f"Water Bill - {bill.bill_month}",
            )

    def settle_with_gateway(self, caller: Caller, bill_id: int, result: GatewayResult) -> Payment:
        """Apply a gateway confirmation. Replays of the same reference are no-ops."""
        require_tenant(caller)
        if not result.external_reference:
            raise ValidationError("external_reference is required", kind="missing_field")
        if not result.success:
            logger.warning(f"Gateway reported failure for bill {bill_id} (ref {result.external_reference})")
            raise ExternalError("Payment was not completed by the gateway", kind="payment_failed")

        try:
            with self.storage.transaction() as db:
                bill = self._tenant_bill(db, caller, bill_id)
                existing = self._payment_by(db, Payment.external_reference, result.external_reference)
                if existing is not None:
                    return self._replayed(existing, bill_id, caller)

                now = utcnow()
                if not _transition(db, bill_id, BillStatus.PENDING, BillStatus.PAID, paid_at=now):
                    raise _invalid_state(bill_id, "paid")

                payment = Payment(
                    bill_id=bill.id,
                    tenant_id=caller.account_id,
                    amount=bill.bill_amount,
                    method=PaymentMethod.GATEWAY.value,
                    external_reference=result.external_reference,
                    status=PaymentStatus.COMPLETED.value,
                    paid_at=now,
                    created_at=now,
                )
                db.add(payment)
                db.flush()
        except IntegrityError:
            # A concurrent retry with the same reference committed first
            return self._replayed(
                self._find_payment(Payment.external_reference, result.external_reference), bill_id, caller
            )

        logger.info(f"Bill {bill_id} paid via gateway (ref {result.external_reference}), payment {payment.id}")
        self.events.changed("payment", payment.id, "created")
        self.events.changed("bill", bill_id, "updated")
        return payment

    def submit_proof(
        self,
        caller: Caller,
        bill_id: int,
        content: bytes,
        content_type: str,
        filename: str,
        idempotency_key: Optional[str] = None,
    ) -> Payment:
        """Attach an uploaded payment proof and hold the bill for owner review"""
        require_tenant(caller)
        self._validate_proof(content, content_type)

        with self.storage.get_db_session() as db:
            bill = self._tenant_bill(db, caller, bill_id)
            if idempotency_key:
                existing = self._payment_by(db, Payment.idempotency_key, idempotency_key)
                if existing is not None:
                    return self._replayed(existing, bill_id, caller)
            if bill.status != BillStatus.PENDING.value:
                raise _invalid_state(bill_id, "submitted for verification")
            amount = bill.bill_amount

        reference = self.file_storage.save(content, content_type, filename)

        try:
            with self.storage.transaction() as db:
                now = utcnow()
                if not _transition(
                    db, bill_id, BillStatus.PENDING, BillStatus.PENDING_VERIFICATION,
                    screenshot_submitted_at=now,
                ):
                    raise _invalid_state(bill_id, "submitted for verification")
                payment = Payment(
                    bill_id=bill_id,
                    tenant_id=caller.account_id,
                    amount=amount,
                    method=PaymentMethod.PROOF_UPLOAD.value,
                    proof_reference=reference,
                    idempotency_key=idempotency_key,
                    status=PaymentStatus.PENDING_VERIFICATION.value,
                    created_at=now,
                )
                db.add(payment)
                db.flush()
        except IntegrityError:
            self._discard(reference)
            return self._replayed(self._find_payment(Payment.idempotency_key, idempotency_key), bill_id, caller)
        except Exception:
            self._discard(reference)
            raise

        logger.info(f"Payment proof submitted for bill {bill_id}, payment {payment.id} awaiting verification")
        self.events.changed("payment", payment.id, "created")
        self.events.changed("bill", bill_id, "updated")
        return payment

    def confirm_payment(self, caller: Caller, bill_id: int) -> Reading:
        """Owner accepts a submitted proof"""
        with self.storage.transaction() as db:
            bill = load_bill(db, bill_id)
            ensure_property_owner(caller, load_bill_property(db, bill))
            now = utcnow()
            if not _transition(db, bill_id, BillStatus.PENDING_VERIFICATION, BillStatus.PAID, paid_at=now):
                raise _invalid_state(bill_id, "confirmed")
            db.execute(
                update(Payment)
                .where(
                    Payment.bill_id == bill_id,
                    Payment.status == PaymentStatus.PENDING_VERIFICATION.value,
                )
                .values(status=PaymentStatus.COMPLETED.value, paid_at=now)
                .execution_options(synchronize_session=False)
            )
            db.refresh(bill)

        logger.info(f"Owner {caller.account_id} confirmed payment of bill {bill_id}")
        self.events.changed("bill", bill_id, "updated")
        return bill

    def list_payments(self, caller: Caller, bill_id: int) -> List[Payment]:
        with self.storage.get_db_session() as db:
            bill = load_bill(db, bill_id)
            flat = db.get(Flat, bill.flat_id)
            ensure_flat_access(db, caller, flat)
            return db.scalars(
                select(Payment).where(Payment.bill_id == bill_id).order_by(Payment.created_at, Payment.id)
            ).all()

    def _tenant_bill(self, db: Session, caller: Caller, bill_id: int) -> Reading:
        bill = load_bill(db, bill_id)
        if tenant_flat_id(db, caller) != bill.flat_id:
            raise AuthorizationError("Bill belongs to another flat")
        return bill

    def _validate_proof(self, content: bytes, content_type: str):
        if not content:
            raise ValidationError("Payment proof is empty", kind="empty_proof")
        max_bytes = settings.max_proof_size_mb * 1024 * 1024
        if len(content) > max_bytes:
            raise ValidationError(
                f"Payment proof exceeds {settings.max_proof_size_mb}MB limit",
                kind="proof_too_large",
            )
        content_type = (content_type or "").lower()
        if not (content_type.startswith("image/") or content_type == PDF_CONTENT_TYPE):
            raise ValidationError(
                f"Unsupported proof type {content_type!r}; upload an image or PDF",
                kind="unsupported_proof_type",
            )

    @staticmethod
    def _payment_by(db: Session, column, value) -> Optional[Payment]:
        return db.scalars(select(Payment).where(column == value)).first()

    def _find_payment(self, column, value) -> Optional[Payment]:
        with self.storage.get_db_session() as db:
            return self._payment_by(db, column, value)

    @staticmethod
    def _replayed(payment: Optional[Payment], bill_id: int, caller: Caller) -> Payment:
        if payment is None:
            raise NotFoundError("Payment for this request could not be found", kind="payment_not_found")
        if payment.tenant_id != caller.account_id:
            raise AuthorizationError("Payment was made by another account")
        if payment.bill_id != bill_id:
            raise ConflictError(
                f"Reference already used for bill {payment.bill_id}",
                kind="duplicate_payment_reference",
            )
        logger.info(f"Replayed payment {payment.id} for bill {bill_id}; nothing re-applied")
        return payment

    def _discard(self, reference: str):
        try:
            self.file_storage.delete(reference)
        except ExternalError as e:
            logger.error(f"Could not remove orphaned proof {reference}: {e}")
