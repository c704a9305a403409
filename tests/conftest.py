"""Shared fixtures: a fresh SQLite database per test and a wired service set."""

import pytest
from fastapi.testclient import TestClient

from aquabill.directory import Caller
from aquabill.main import app, get_services
from aquabill.models.enums import Role
from aquabill.services import create_services
from aquabill.utils.file_storage import LocalFileStorage

OWNER_ID = "owner-1"
OTHER_OWNER_ID = "owner-2"
TENANT_ID = "tenant-1"


@pytest.fixture
def services(tmp_path):
    svc = create_services(
        database_url=f"sqlite:///{tmp_path / 'aquabill-test.db'}",
        file_storage=LocalFileStorage(str(tmp_path / "uploads")),
    )
    svc.directory.register_account(OWNER_ID, "owner", "Olivia Owner", email="olivia@example.com")
    svc.directory.register_account(OTHER_OWNER_ID, "owner", "Oscar Owner")
    yield svc
    svc.storage.dispose()


@pytest.fixture
def owner() -> Caller:
    return Caller(account_id=OWNER_ID, role=Role.OWNER)


@pytest.fixture
def other_owner() -> Caller:
    return Caller(account_id=OTHER_OWNER_ID, role=Role.OWNER)


@pytest.fixture
def property_obj(services, owner):
    return services.properties.create_property(
        owner, "Sunrise Apartments", "12 Lake Road", "Pune", "SUN", rate=5, fixed_charge=50
    )


@pytest.fixture
def flat(services, owner, property_obj):
    return services.flats.add_flat(owner, property_obj.id, "101", floor="1")


@pytest.fixture
def tenant(services, flat) -> Caller:
    account = services.tenancy.signup_tenant(
        TENANT_ID, "Tara Tenant", flat.flat_code, email="tara@example.com", phone="+91 98765 43210"
    )
    return Caller(account_id=account.id, role=Role.TENANT, flat_id=account.flat_id)


@pytest.fixture
def bill(services, owner, flat, tenant):
    services.billing.record_reading(owner, flat.id, 100, "Jan 2025")
    return services.billing.record_reading(owner, flat.id, 150, "Feb 2025")


@pytest.fixture
def client(services):
    app.dependency_overrides[get_services] = lambda: services
    yield TestClient(app)
    app.dependency_overrides.clear()


def headers_for(caller: Caller) -> dict:
    headers = {"X-Account-Id": caller.account_id, "X-Account-Role": caller.role.value}
    if caller.flat_id is not None:
        headers["X-Flat-Id"] = str(caller.flat_id)
    return headers
