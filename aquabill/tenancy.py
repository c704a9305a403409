"""Binding tenant accounts to flats.

A flat is Vacant (no tenant) or Occupied. Binding and unbinding write the
flat and the tenant's account in the same transaction, so ``flats.tenant_id``
and ``accounts.flat_id`` never disagree. Binding is a compare-and-set on a
null ``tenant_id``: of two concurrent signups with one code, exactly one
wins and the other gets ``OccupiedError``.
"""
from typing import Callable, Optional
import logging

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from aquabill.config.settings import settings
from aquabill.directory import Caller, ensure_property_owner, require_tenant
from aquabill.errors import ConflictError, NotFoundError, OccupiedError, ValidationError
from aquabill.events import EventBus
from aquabill.flat_registry import is_code_taken, load_flat, load_parent_property
from aquabill.models.database import Account, Flat, RetiredFlatCode
from aquabill.models.enums import Role
from aquabill.storage_manager import StorageManager
from aquabill.utils.codes import generate_unique_code
from aquabill.utils.money import Number, non_negative
from aquabill.utils.timeutils import utcnow

logger = logging.getLogger(__name__)


def _flat_by_code(db: Session, flat_code: str) -> Flat:
    flat = db.scalars(select(Flat).where(Flat.flat_code == flat_code)).first()
    if flat is None:
        raise NotFoundError("Invalid flat code. Please check with your owner.", kind="invalid_flat_code")
    return flat


def _claim_flat(db: Session, flat: Flat, account_id: str):
    if flat.tenant_id is not None:
        raise OccupiedError("This flat is already occupied.")
    claimed = db.execute(
        update(Flat)
        .where(Flat.id == flat.id, Flat.tenant_id.is_(None))
        .values(tenant_id=account_id)
        .execution_options(synchronize_session=False)
    ).rowcount
    if not claimed:
        raise OccupiedError("This flat is already occupied.")


class TenancyLifecycle:
    def __init__(
        self,
        storage: StorageManager,
        events: EventBus,
        token_source: Optional[Callable[[int], str]] = None,
    ):
        self.storage = storage
        self.events = events
        self.token_source = token_source

    def signup_tenant(
        self,
        account_id: str,
        name: str,
        flat_code: str,
        email: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> Account:
        """Create a tenant account bound to the flat behind ``flat_code``"""
        if not account_id or not name:
            raise ValidationError("account_id and name are required", kind="missing_field")
        if not flat_code:
            raise ValidationError("Flat code is required for tenants", kind="missing_field")

        try:
            with self.storage.transaction() as db:
                if db.get(Account, account_id) is not None:
                    raise ConflictError(f"Account {account_id} already exists", kind="account_exists")
                flat = _flat_by_code(db, flat_code)
                _claim_flat(db, flat, account_id)
                account = Account(
                    id=account_id,
                    role=Role.TENANT.value,
                    name=name,
                    email=email,
                    phone=phone,
                    flat_id=flat.id,
                )
                db.add(account)
                db.flush()
        except IntegrityError:
            raise ConflictError(f"Account {account_id} already exists", kind="account_exists")
        except Exception as e:
            logger.error(f"Tenant signup failed for {account_id} with code {flat_code}: {e}")
            raise

        logger.info(f"Tenant {account_id} signed up and bound to flat {flat.id}")
        self.events.changed("account", account_id, "created")
        self.events.changed("flat", flat.id, "updated")
        return account

    def bind_tenant(self, caller: Caller, flat_code: str) -> Account:
        """Bind an existing tenant account that holds no flat"""
        require_tenant(caller)
        if not flat_code:
            raise ValidationError("Flat code is required", kind="missing_field")

        with self.storage.transaction() as db:
            account = db.get(Account, caller.account_id)
            if account is None:
                raise NotFoundError(f"Account {caller.account_id} not found", kind="account_not_found")
            if account.flat_id is not None:
                raise ConflictError("Account is already bound to a flat", kind="tenant_already_bound")

            flat = _flat_by_code(db, flat_code)
            _claim_flat(db, flat, account.id)
            bound = db.execute(
                update(Account)
                .where(Account.id == account.id, Account.flat_id.is_(None))
                .values(flat_id=flat.id)
                .execution_options(synchronize_session=False)
            ).rowcount
            if not bound:
                raise ConflictError("Account is already bound to a flat", kind="tenant_already_bound")
            db.refresh(account)

        logger.info(f"Tenant {account.id} bound to flat {flat.id}")
        self.events.changed("account", account.id, "updated")
        self.events.changed("flat", flat.id, "updated")
        return account

    def unbind_tenant(self, caller: Caller, flat_id: int, final_reading: Optional[Number] = None) -> Flat:
        """Vacate a flat and rotate its code, all in one commit.

        ``final_reading`` is kept for the records only; it is not checked
        against earlier readings.
        """
        final = non_negative(final_reading, "final_reading") if final_reading is not None else None

        with self.storage.transaction() as db:
            flat = load_flat(db, flat_id)
            ensure_property_owner(caller, load_parent_property(db, flat))
            outgoing = flat.tenant_id
            if outgoing is None:
                raise ConflictError(f"Flat {flat_id} has no tenant", kind="flat_vacant")

            old_code = flat.flat_code
            new_code = generate_unique_code(
                lambda code: is_code_taken(db, code),
                length=settings.flat_code_length,
                max_attempts=settings.flat_code_max_attempts,
                token_source=self.token_source,
            )

            vacated = db.execute(
                update(Flat)
                .where(Flat.id == flat_id, Flat.tenant_id == outgoing)
                .values(
                    tenant_id=None,
                    previous_tenant_id=outgoing,
                    vacated_at=utcnow(),
                    final_reading=final,
                    flat_code=new_code,
                )
                .execution_options(synchronize_session=False)
            ).rowcount
            if not vacated:
                raise ConflictError(f"Flat {flat_id} changed while vacating; retry", kind="flat_changed")

            db.merge(RetiredFlatCode(code=old_code, flat_id=flat_id, retired_at=utcnow()))

            released = db.execute(
                update(Account)
                .where(Account.id == outgoing, Account.flat_id == flat_id)
                .values(flat_id=None)
                .execution_options(synchronize_session=False)
            ).rowcount
            if not released:
                logger.warning(f"Outgoing tenant {outgoing} of flat {flat_id} had no matching account link")
            db.refresh(flat)

        logger.info(f"Tenant {outgoing} removed from flat {flat_id}; code {old_code} retired")
        self.events.changed("account", outgoing, "updated")
        self.events.changed("flat", flat_id, "updated")
        return flat
