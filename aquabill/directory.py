from dataclasses import dataclass
from typing import Optional
import logging

from sqlalchemy.orm import Session

from aquabill.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from aquabill.events import EventBus
from aquabill.models.database import Account, Flat, Property
from aquabill.models.enums import Role
from aquabill.storage_manager import StorageManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Caller:
    """Who is calling, as asserted by the identity provider."""
    account_id: str
    role: Role
    flat_id: Optional[int] = None

    @property
    def is_owner(self) -> bool:
        return self.role == Role.OWNER


def parse_role(role) -> Role:
    try:
        return Role(role)
    except ValueError:
        raise ValidationError(f"Unknown role: {role!r}", kind="invalid_role")


def require_owner(caller: Caller):
    if caller.role != Role.OWNER:
        raise AuthorizationError("Only owners can perform this action")


def require_tenant(caller: Caller):
    if caller.role != Role.TENANT:
        raise AuthorizationError("Only tenants can perform this action")


def ensure_property_owner(caller: Caller, property_obj: Property):
    require_owner(caller)
    if property_obj.owner_id != caller.account_id:
        raise AuthorizationError("Property belongs to another owner")


def tenant_flat_id(db: Session, caller: Caller) -> int:
    """Flat the calling tenant is bound to, read from the directory.

    The stored binding is authoritative; ``caller.flat_id`` is only a hint.
    """
    require_tenant(caller)
    account = db.get(Account, caller.account_id)
    if account is None or account.flat_id is None:
        raise AuthorizationError("No flat is assigned to this account", kind="no_flat_assigned")
    return account.flat_id


def ensure_flat_access(db: Session, caller: Caller, flat: Flat):
    """Owners of the flat's property and the flat's tenant may read it."""
    if caller.role == Role.OWNER:
        property_obj = db.get(Property, flat.property_id)
        if property_obj is None or property_obj.owner_id != caller.account_id:
            raise AuthorizationError("Flat belongs to another owner")
        return
    if tenant_flat_id(db, caller) != flat.id:
        raise AuthorizationError("Flat is not assigned to this account")


class Directory:
    def __init__(self, storage: StorageManager, events: EventBus):
        self.storage = storage
        self.events = events

    def register_account(
        self,
        account_id: str,
        role,
        name: str,
        email: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> Account:
        """Create the profile for an account the identity provider issued"""
        role = parse_role(role)
        if not account_id or not name:
            raise ValidationError("account_id and name are required", kind="missing_field")

        with self.storage.transaction() as db:
            if db.get(Account, account_id) is not None:
                raise ConflictError(f"Account {account_id} already exists", kind="account_exists")
            account = Account(id=account_id, role=role.value, name=name, email=email, phone=phone)
            db.add(account)

        logger.info(f"Registered {role.value} account {account_id}")
        self.events.changed("account", account_id, "created")
        return account

    def get_account(self, account_id: str) -> Account:
        with self.storage.get_db_session() as db:
            account = db.get(Account, account_id)
            if account is None:
                raise NotFoundError(f"Account {account_id} not found", kind="account_not_found")
            return account
