from typing import Dict, List, Optional
import logging

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from aquabill.billing_engine import latest_reading
from aquabill.directory import Caller, ensure_flat_access, ensure_property_owner
from aquabill.errors import ConflictError, ConsistencyError, NotFoundError, ValidationError
from aquabill.events import EventBus
from aquabill.models.database import Flat, Property, RetiredFlatCode
from aquabill.storage_manager import StorageManager
from aquabill.utils.codes import derive_flat_code
from aquabill.utils.money import Number, non_negative

logger = logging.getLogger(__name__)


def load_flat(db: Session, flat_id: int) -> Flat:
    flat = db.get(Flat, flat_id)
    if flat is None:
        raise NotFoundError(f"Flat {flat_id} not found", kind="flat_not_found")
    return flat


def load_parent_property(db: Session, flat: Flat) -> Property:
    """Property a flat belongs to. Its absence is a broken store, not bad input."""
    property_obj = db.get(Property, flat.property_id)
    if property_obj is None:
        logger.error(f"Flat {flat.id} references missing property {flat.property_id}")
        raise ConsistencyError(
            f"Property {flat.property_id} of flat {flat.id} is missing",
            kind="missing_property",
        )
    return property_obj


def is_code_taken(db: Session, code: str) -> bool:
    """True if ``code`` is an active flat code or one retired at a vacancy."""
    if db.scalar(select(Flat.id).where(Flat.flat_code == code)) is not None:
        return True
    return db.get(RetiredFlatCode, code) is not None


class FlatRegistry:
    def __init__(self, storage: StorageManager, events: EventBus):
        self.storage = storage
        self.events = events

    def add_flat(
        self,
        caller: Caller,
        property_id: int,
        flat_number: str,
        floor: Optional[str] = None,
        tenant_name: Optional[str] = None,
        tenant_phone: Optional[str] = None,
    ) -> Flat:
        """Add a vacant flat. The tenant fields are informational only."""
        flat_number = str(flat_number).strip() if flat_number is not None else ""
        if not flat_number:
            raise ValidationError("Flat number is required", kind="missing_field")

        try:
            with self.storage.transaction() as db:
                property_obj = db.get(Property, property_id)
                if property_obj is None:
                    raise NotFoundError(f"Property {property_id} not found", kind="property_not_found")
                ensure_property_owner(caller, property_obj)

                flat_code = derive_flat_code(property_obj.property_code, flat_number)
                if is_code_taken(db, flat_code):
                    raise ConflictError(f"Flat code {flat_code} is in use or was retired", kind="duplicate_flat_code")

                flat = Flat(
                    property_id=property_id,
                    flat_number=flat_number,
                    floor=floor,
                    flat_code=flat_code,
                    tenant_id=None,
                    tenant_name=tenant_name,
                    tenant_phone=tenant_phone,
                    free_water_units=0,
                    reading_version=0,
                )
                db.add(flat)
                db.flush()
        except IntegrityError:
            raise ConflictError(f"Flat {flat_number} already exists in this property", kind="duplicate_flat_code")

        logger.info(f"Added flat {flat.id} ({flat.flat_code}) to property {property_id}")
        self.events.changed("flat", flat.id, "created")
        return flat

    def delete_flat(self, caller: Caller, flat_id: int):
        """Remove a vacant flat together with its bills"""
        with self.storage.transaction() as db:
            flat = load_flat(db, flat_id)
            ensure_property_owner(caller, load_parent_property(db, flat))
            # Claims the row only while vacant, so a concurrent bind cannot interleave
            vacant = db.execute(
                update(Flat)
                .where(Flat.id == flat_id, Flat.tenant_id.is_(None))
                .values(reading_version=Flat.reading_version + 1)
                .execution_options(synchronize_session=False)
            ).rowcount
            if not vacant:
                raise ConflictError(
                    f"Flat {flat_id} is occupied; remove the tenant first",
                    kind="flat_occupied",
                )
            db.delete(flat)

        logger.info(f"Deleted flat {flat_id}")
        self.events.changed("flat", flat_id, "deleted")

    def set_free_allowance(self, caller: Caller, flat_id: int, units: Number) -> Flat:
        """Free units for future bills; past readings keep their snapshot."""
        units = non_negative(units, "free_water_units")
        with self.storage.transaction() as db:
            flat = load_flat(db, flat_id)
            ensure_property_owner(caller, load_parent_property(db, flat))
            flat.free_water_units = units

        logger.info(f"Set free allowance of flat {flat_id} to {units} units")
        self.events.changed("flat", flat_id, "updated")
        return flat

    def get_flat(self, caller: Caller, flat_id: int) -> Flat:
        with self.storage.get_db_session() as db:
            flat = load_flat(db, flat_id)
            ensure_flat_access(db, caller, flat)
            return flat

    def list_flats(self, caller: Caller, property_id: int) -> List[Dict]:
        """Flats of a property, each with its latest reading"""
        with self.storage.get_db_session() as db:
            property_obj = db.get(Property, property_id)
            if property_obj is None:
                raise NotFoundError(f"Property {property_id} not found", kind="property_not_found")
            ensure_property_owner(caller, property_obj)

            flats = db.scalars(
                select(Flat).where(Flat.property_id == property_id).order_by(Flat.id)
            ).all()
            return [
                {"flat": flat, "latest_reading": latest_reading(db, flat.id)}
                for flat in flats
            ]
