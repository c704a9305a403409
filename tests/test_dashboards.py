"""Tests for owner/tenant overviews and reminders."""

from decimal import Decimal

import pytest

from aquabill.bill_lifecycle import GatewayResult
from aquabill.errors import AuthorizationError


class TestOwnerOverview:
    def test_totals(self, services, owner, property_obj, flat, tenant, bill) -> None:
        services.flats.add_flat(owner, property_obj.id, "102")

        overview = services.dashboards.owner_overview(owner)

        assert overview["total_properties"] == 1
        assert overview["total_flats"] == 2
        assert overview["occupied_flats"] == 1
        # Jan and Feb bills are both unpaid
        assert overview["unpaid_bills"] == 2

    def test_paid_bills_not_counted(self, services, owner, tenant, bill) -> None:
        services.lifecycle.settle_with_gateway(tenant, bill.id, GatewayResult("pay_1", True))
        assert services.dashboards.owner_overview(owner)["unpaid_bills"] == 1

    def test_tenant_forbidden(self, services, tenant) -> None:
        with pytest.raises(AuthorizationError):
            services.dashboards.owner_overview(tenant)


class TestTenantOverview:
    def test_overview(self, services, tenant, flat, bill) -> None:
        overview = services.dashboards.tenant_overview(tenant)

        assert overview["flat"].id == flat.id
        assert overview["property"].property_code == "SUN"
        assert [b.bill_month for b in overview["bills"]] == ["Feb 2025", "Jan 2025"]
        assert overview["total_pending"] == Decimal("850.00")

    def test_notifications_list_pending_bills(self, services, tenant, bill) -> None:
        services.lifecycle.settle_with_gateway(tenant, bill.id, GatewayResult("pay_1", True))

        notifications = services.dashboards.bill_notifications(tenant)

        assert len(notifications) == 1
        assert notifications[0]["message"] == "New water bill for Jan 2025"

    def test_owner_has_no_tenant_view(self, services, owner) -> None:
        with pytest.raises(AuthorizationError):
            services.dashboards.tenant_overview(owner)


class TestPaymentReminder:
    def test_reminder_text(self, services, owner, tenant, bill) -> None:
        reminder = services.dashboards.payment_reminder(owner, bill.id)

        assert reminder.subject == "Water Bill Payment Reminder - Feb 2025"
        assert reminder.tenant_name == "Tara Tenant"
        assert reminder.email == "tara@example.com"
        assert "Dear Tara Tenant," in reminder.body
        assert "Flat: 101" in reminder.body
        assert "Amount Due: 300.00" in reminder.body
        assert reminder.body.endswith("Sunrise Apartments Management")

    def test_other_owner_forbidden(self, services, other_owner, bill) -> None:
        with pytest.raises(AuthorizationError):
            services.dashboards.payment_reminder(other_owner, bill.id)
