"""Tests for accounts, properties and flats."""

from decimal import Decimal

import pytest

from aquabill.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError


class TestDirectory:
    def test_register_and_get(self, services) -> None:
        services.directory.register_account("t-9", "tenant", "Nina", phone="123")
        account = services.directory.get_account("t-9")
        assert account.role == "tenant"
        assert account.flat_id is None

    def test_duplicate_account(self, services) -> None:
        with pytest.raises(ConflictError) as exc:
            services.directory.register_account("owner-1", "owner", "Again")
        assert exc.value.kind == "account_exists"

    def test_unknown_role(self, services) -> None:
        with pytest.raises(ValidationError) as exc:
            services.directory.register_account("x-1", "landlord", "Who")
        assert exc.value.kind == "invalid_role"

    def test_missing_account(self, services) -> None:
        with pytest.raises(NotFoundError):
            services.directory.get_account("ghost")


class TestPropertyRegistry:
    def test_create_property(self, services, owner, property_obj) -> None:
        assert property_obj.owner_id == owner.account_id
        assert property_obj.property_code == "SUN"
        assert property_obj.water_rate_per_unit == Decimal(5)
        assert services.properties.get_property(owner, property_obj.id).name == "Sunrise Apartments"

    def test_duplicate_code_across_owners(self, services, other_owner, property_obj) -> None:
        with pytest.raises(ConflictError) as exc:
            services.properties.create_property(other_owner, "Elsewhere", None, None, "SUN", 1, 1)
        assert exc.value.kind == "duplicate_property_code"

    def test_tenant_cannot_create(self, services, tenant) -> None:
        with pytest.raises(AuthorizationError):
            services.properties.create_property(tenant, "Mine", None, None, "MINE", 1, 1)

    @pytest.mark.parametrize("rate, fixed", [(-1, 0), (1, -0.01), ("abc", 0), (float("nan"), 0)])
    def test_invalid_rates(self, services, owner, rate, fixed) -> None:
        with pytest.raises(ValidationError):
            services.properties.create_property(owner, "Bad", None, None, "BAD", rate, fixed)

    def test_get_property_other_owner(self, services, other_owner, property_obj) -> None:
        with pytest.raises(AuthorizationError):
            services.properties.get_property(other_owner, property_obj.id)

    def test_tenant_reads_own_property_only(self, services, owner, property_obj, tenant) -> None:
        elsewhere = services.properties.create_property(owner, "Elsewhere", None, None, "ELS", 1, 0)

        assert services.properties.get_property(tenant, property_obj.id).id == property_obj.id
        with pytest.raises(AuthorizationError):
            services.properties.get_property(tenant, elsewhere.id)

    def test_update_rates(self, services, owner, property_obj) -> None:
        updated = services.properties.update_rates(owner, property_obj.id, "7.5", 20)
        assert updated.water_rate_per_unit == Decimal("7.5")
        assert updated.fixed_charge == Decimal(20)

    def test_update_rates_other_owner(self, services, other_owner, property_obj) -> None:
        with pytest.raises(AuthorizationError):
            services.properties.update_rates(other_owner, property_obj.id, 1, 1)

    def test_list_counts_occupancy(self, services, owner, property_obj, flat, tenant) -> None:
        services.flats.add_flat(owner, property_obj.id, "102")
        services.properties.create_property(owner, "Empty Block", None, None, "EMP", 1, 0)

        summaries = {s["property"].property_code: s for s in services.properties.list_properties(owner)}

        assert summaries["SUN"]["total_flats"] == 2
        assert summaries["SUN"]["occupied_flats"] == 1
        assert summaries["EMP"]["total_flats"] == 0
        assert summaries["EMP"]["occupied_flats"] == 0

    def test_list_scoped_to_owner(self, services, other_owner, property_obj) -> None:
        assert services.properties.list_properties(other_owner) == []


class TestFlatRegistry:
    def test_add_flat_derives_code(self, flat) -> None:
        assert flat.flat_code == "SUN-F101"
        assert flat.tenant_id is None
        assert flat.free_water_units == 0

    def test_duplicate_flat_number(self, services, owner, property_obj, flat) -> None:
        with pytest.raises(ConflictError) as exc:
            services.flats.add_flat(owner, property_obj.id, "101")
        assert exc.value.kind == "duplicate_flat_code"

    def test_add_flat_unknown_property(self, services, owner) -> None:
        with pytest.raises(NotFoundError):
            services.flats.add_flat(owner, 999, "1")

    def test_add_flat_other_owner(self, services, other_owner, property_obj) -> None:
        with pytest.raises(AuthorizationError):
            services.flats.add_flat(other_owner, property_obj.id, "1")

    def test_set_free_allowance(self, services, owner, flat) -> None:
        updated = services.flats.set_free_allowance(owner, flat.id, "12.5")
        assert updated.free_water_units == Decimal("12.5")

        with pytest.raises(ValidationError):
            services.flats.set_free_allowance(owner, flat.id, -1)

    def test_list_flats_with_latest_reading(self, services, owner, property_obj, flat, bill) -> None:
        services.flats.add_flat(owner, property_obj.id, "102")

        entries = services.flats.list_flats(owner, property_obj.id)

        assert [e["flat"].flat_number for e in entries] == ["101", "102"]
        assert entries[0]["latest_reading"].id == bill.id
        assert entries[1]["latest_reading"] is None

    def test_delete_vacant_flat(self, services, owner, flat) -> None:
        services.flats.delete_flat(owner, flat.id)
        with pytest.raises(NotFoundError):
            services.flats.get_flat(owner, flat.id)

    def test_tenant_sees_own_flat_only(self, services, owner, property_obj, flat, tenant) -> None:
        other = services.flats.add_flat(owner, property_obj.id, "102")
        assert services.flats.get_flat(tenant, flat.id).id == flat.id
        with pytest.raises(AuthorizationError):
            services.flats.get_flat(tenant, other.id)
