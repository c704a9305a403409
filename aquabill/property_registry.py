from typing import Dict, List, Optional
import logging

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from aquabill.directory import Caller, ensure_property_owner, require_owner, tenant_flat_id
from aquabill.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from aquabill.events import EventBus
from aquabill.models.database import Flat, Property
from aquabill.storage_manager import StorageManager
from aquabill.utils.money import MONEY_PLACES, Number, non_negative

logger = logging.getLogger(__name__)


class PropertyRegistry:
    def __init__(self, storage: StorageManager, events: EventBus):
        self.storage = storage
        self.events = events

    def create_property(
        self,
        caller: Caller,
        name: str,
        address: Optional[str],
        city: Optional[str],
        property_code: str,
        rate: Number,
        fixed_charge: Number,
    ) -> Property:
        """Register a property with its default billing rates"""
        require_owner(caller)
        if not name or not name.strip():
            raise ValidationError("Property name is required", kind="missing_field")
        if not property_code or not property_code.strip():
            raise ValidationError("Property code is required", kind="missing_field")
        rate = non_negative(rate, "water_rate_per_unit")
        fixed_charge = non_negative(fixed_charge, "fixed_charge", places=MONEY_PLACES)

        try:
            with self.storage.transaction() as db:
                taken = db.scalar(select(Property.id).where(Property.property_code == property_code))
                if taken is not None:
                    raise ConflictError(
                        f"Property code {property_code} is already in use",
                        kind="duplicate_property_code",
                    )
                property_obj = Property(
                    owner_id=caller.account_id,
                    name=name.strip(),
                    address=address,
                    city=city,
                    property_code=property_code,
                    water_rate_per_unit=rate,
                    fixed_charge=fixed_charge,
                )
                db.add(property_obj)
                db.flush()
        except IntegrityError:
            # Lost a race with a concurrent create using the same code
            raise ConflictError(
                f"Property code {property_code} is already in use",
                kind="duplicate_property_code",
            )

        logger.info(f"Created property {property_obj.id} ({property_code}) for owner {caller.account_id}")
        self.events.changed("property", property_obj.id, "created")
        return property_obj

    def update_rates(self, caller: Caller, property_id: int, rate: Number, fixed_charge: Number) -> Property:
        """Change billing defaults. Bills already issued keep their amounts."""
        rate = non_negative(rate, "water_rate_per_unit")
        fixed_charge = non_negative(fixed_charge, "fixed_charge", places=MONEY_PLACES)

        with self.storage.transaction() as db:
            property_obj = self._load(db, property_id)
            ensure_property_owner(caller, property_obj)
            property_obj.water_rate_per_unit = rate
            property_obj.fixed_charge = fixed_charge

        logger.info(f"Updated rates for property {property_id}: rate={rate}, fixed={fixed_charge}")
        self.events.changed("property", property_id, "updated")
        return property_obj

    def get_property(self, caller: Caller, property_id: int) -> Property:
        """Owners read their own properties; a tenant reads the one holding their flat"""
        with self.storage.get_db_session() as db:
            property_obj = self._load(db, property_id)
            if caller.is_owner:
                ensure_property_owner(caller, property_obj)
            else:
                flat = db.get(Flat, tenant_flat_id(db, caller))
                if flat is None or flat.property_id != property_obj.id:
                    raise AuthorizationError("Property does not hold this account's flat")
            return property_obj

    def list_properties(self, caller: Caller) -> List[Dict]:
        """Owner's properties with flat and occupancy counts"""
        require_owner(caller)
        with self.storage.get_db_session() as db:
            properties = db.scalars(
                select(Property)
                .where(Property.owner_id == caller.account_id)
                .order_by(Property.created_at, Property.id)
            ).all()

            counts = {
                row.property_id: (row.total, row.occupied or 0)
                for row in db.execute(
                    select(
                        Flat.property_id,
                        func.count(Flat.id).label("total"),
                        func.count(Flat.tenant_id).label("occupied"),
                    )
                    .where(Flat.property_id.in_([p.id for p in properties]))
                    .group_by(Flat.property_id)
                )
            }

        result = []
        for property_obj in properties:
            total, occupied = counts.get(property_obj.id, (0, 0))
            result.append({
                "property": property_obj,
                "total_flats": total,
                "occupied_flats": occupied,
            })
        return result

    @staticmethod
    def _load(db, property_id: int) -> Property:
        property_obj = db.get(Property, property_id)
        if property_obj is None:
            raise NotFoundError(f"Property {property_id} not found", kind="property_not_found")
        return property_obj
