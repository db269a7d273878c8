"""External identity binding ledger: primaries, history, transfer and admin paths."""

import httpx
import pytest

from hydroline_identity.service.bindings import (
    REASON_AUTO_REASSIGN,
    REASON_FIRST_BINDING,
    REASON_MANUAL_UNBIND,
    REASON_REPLACED_PRIMARY,
    REASON_SET_PRIMARY,
    REASON_TRANSFER,
    BindingService,
)
from hydroline_identity.service.credentials import (
    AUTHME_ACCOUNT_NOT_FOUND,
    AUTHME_PASSWORD_MISMATCH,
    BadCredentials,
    CredentialStoreClient,
    CredentialStoreUnavailable,
    VerifiedAccount,
)
from hydroline_identity.service.errors import (
    BindingConflictError,
    NotFoundError,
    ServiceUnavailableError,
    ValidationError,
)
from hydroline_identity.storage.models import (
    BIND,
    MANUAL_ENTRY,
    PRIMARY_SET,
    PRIMARY_UNSET,
    TRANSFER,
    UNBIND,
)


@pytest.fixture
def bindings(store, credentials):
    return BindingService(store, credentials)


def _history(store, user_id):
    items, _ = store.list_binding_history(user_id, offset=0, limit=100)
    return items


def _actions(store, user_id):
    return sorted((e.action, e.reason) for e in _history(store, user_id))


class TestBind:
    async def test_first_binding_becomes_primary(self, store, bindings):
        user = store.create_user()
        binding = await bindings.bind_identity(user.id, "steve", "hunter2", source_ip="10.0.0.1")

        assert binding.username == "Steve"
        assert binding.username_lower == "steve"
        assert binding.realname == "Steve"
        assert binding.bound_by_ip == "10.0.0.1"
        assert bindings.primary_binding_id(user.id) == binding.id
        assert _actions(store, user.id) == sorted(
            [(BIND, None), (PRIMARY_SET, REASON_FIRST_BINDING)]
        )

    async def test_second_binding_is_not_primary(self, store, bindings):
        user = store.create_user()
        first = await bindings.bind_identity(user.id, "steve", "hunter2")
        second = await bindings.bind_identity(user.id, "alex", "s3cret")
        listed = bindings.list_bindings(user.id)
        assert {i["binding"].id: i["is_primary"] for i in listed} == {
            first.id: True,
            second.id: False,
        }

    async def test_rebinding_same_account_refreshes(self, store, bindings):
        user = store.create_user()
        first = await bindings.bind_identity(user.id, "steve", "hunter2")
        again = await bindings.bind_identity(user.id, "STEVE", "hunter2")
        assert again.id == first.id
        assert len(bindings.list_bindings(user.id)) == 1
        refreshed = [e for e in _history(store, user.id) if e.payload == {"refreshed": True}]
        assert len(refreshed) == 1

    async def test_account_owned_by_other_user_conflicts(self, store, bindings):
        owner = store.create_user()
        other = store.create_user()
        await bindings.bind_identity(owner.id, "steve", "hunter2")
        with pytest.raises(BindingConflictError) as excinfo:
            await bindings.bind_identity(other.id, "Steve", "hunter2")
        assert excinfo.value.error_code == "binding_conflict"
        assert bindings.list_bindings(other.id) == []
        assert _history(store, other.id) == []

    async def test_wrong_password_writes_nothing(self, store, bindings):
        user = store.create_user()
        with pytest.raises(BadCredentials) as excinfo:
            await bindings.bind_identity(user.id, "steve", "wrong")
        assert excinfo.value.detail["code"] == AUTHME_PASSWORD_MISMATCH
        assert excinfo.value.status_code == 400
        assert bindings.list_bindings(user.id) == []
        assert _history(store, user.id) == []

    async def test_unknown_account(self, store, bindings):
        user = store.create_user()
        with pytest.raises(BadCredentials) as excinfo:
            await bindings.bind_identity(user.id, "nobody", "x")
        assert excinfo.value.detail["code"] == AUTHME_ACCOUNT_NOT_FOUND

    async def test_unavailable_store_writes_nothing(self, store):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = CredentialStoreClient(
            "http://credentials.test", transport=httpx.MockTransport(handler)
        )
        service = BindingService(store, client)
        user = store.create_user()
        with pytest.raises(CredentialStoreUnavailable) as excinfo:
            await service.bind_identity(user.id, "steve", "hunter2")
        assert isinstance(excinfo.value, ServiceUnavailableError)
        assert excinfo.value.status_code == 503
        assert service.list_bindings(user.id) == []
        assert _history(store, user.id) == []

    async def test_empty_credentials_rejected(self, store, bindings):
        user = store.create_user()
        with pytest.raises(ValidationError):
            await bindings.bind_identity(user.id, "  ", "hunter2")
        with pytest.raises(ValidationError):
            await bindings.bind_identity(user.id, "steve", "")

    def test_bind_account_unknown_user(self, bindings):
        with pytest.raises(NotFoundError):
            bindings.bind_account("missing", VerifiedAccount(username="Steve"))


class TestPrimary:
    def test_set_primary_swaps_pointer_with_history(self, store, bindings):
        user = store.create_user()
        first = bindings.bind_account(user.id, VerifiedAccount(username="Steve"))
        second = bindings.bind_account(user.id, VerifiedAccount(username="Alex"))

        bindings.set_primary(user.id, second.id)

        assert bindings.primary_binding_id(user.id) == second.id
        history = _history(store, user.id)
        unset = [e for e in history if e.action == PRIMARY_UNSET]
        assert [(e.binding_id, e.reason) for e in unset] == [(first.id, REASON_REPLACED_PRIMARY)]
        set_entries = [e for e in history if e.reason == REASON_SET_PRIMARY]
        assert [e.binding_id for e in set_entries] == [second.id]

    def test_set_primary_is_idempotent(self, store, bindings):
        user = store.create_user()
        binding = bindings.bind_account(user.id, VerifiedAccount(username="Steve"))
        before = len(_history(store, user.id))
        bindings.set_primary(user.id, binding.id)
        assert len(_history(store, user.id)) == before

    def test_set_primary_on_foreign_binding(self, store, bindings):
        owner = store.create_user()
        other = store.create_user()
        binding = bindings.bind_account(owner.id, VerifiedAccount(username="Steve"))
        with pytest.raises(NotFoundError):
            bindings.set_primary(other.id, binding.id)

    def test_bind_with_set_primary(self, store, bindings):
        user = store.create_user()
        bindings.bind_account(user.id, VerifiedAccount(username="Steve"))
        second = bindings.bind_account(user.id, VerifiedAccount(username="Alex"), set_primary=True)
        assert bindings.primary_binding_id(user.id) == second.id

    def test_cleared_primary_not_reassigned_by_later_bind(self, store, bindings):
        user = store.create_user()
        first = bindings.bind_account(user.id, VerifiedAccount(username="Steve"))
        bindings.update_binding(user.id, first.id, primary=False)

        second = bindings.bind_account(user.id, VerifiedAccount(username="Alex"))

        assert bindings.primary_binding_id(user.id) is None
        first_binding = [e for e in _history(store, user.id) if e.reason == REASON_FIRST_BINDING]
        assert [e.binding_id for e in first_binding] == [first.id]
        assert second.id not in [e.binding_id for e in _history(store, user.id) if e.action == PRIMARY_SET]

    def test_bind_primary_unbind_rebind_round_trip(self, store, bindings):
        user = store.create_user()
        steve = bindings.bind_account(user.id, VerifiedAccount(username="Steve"))
        alex = bindings.bind_account(user.id, VerifiedAccount(username="Alex"))
        bindings.set_primary(user.id, alex.id)

        successor = bindings.unbind_identity(user.id, alex.id)
        assert successor.id == steve.id

        rebound = bindings.bind_account(user.id, VerifiedAccount(username="Alex"))

        assert rebound.id != alex.id
        assert bindings.primary_binding_id(user.id) == steve.id
        binds = [e for e in _history(store, user.id) if e.action == BIND and e.username == "Alex"]
        assert sorted(e.binding_id for e in binds) == sorted([alex.id, rebound.id])
        assert len({e.id for e in binds}) == 2
        assert [e.payload for e in binds] == [None, None]

    def test_rebinding_after_last_unbind_is_first_binding_again(self, store, bindings):
        user = store.create_user()
        binding = bindings.bind_account(user.id, VerifiedAccount(username="Steve"))
        bindings.unbind_identity(user.id, binding.id)

        rebound = bindings.bind_account(user.id, VerifiedAccount(username="Steve"))

        assert bindings.primary_binding_id(user.id) == rebound.id
        first_binding = [e for e in _history(store, user.id) if e.reason == REASON_FIRST_BINDING]
        assert sorted(e.binding_id for e in first_binding) == sorted([binding.id, rebound.id])


class TestUnbind:
    def test_unbinding_primary_promotes_oldest_survivor(self, store, bindings):
        user = store.create_user()
        first = bindings.bind_account(user.id, VerifiedAccount(username="Steve"))
        second = bindings.bind_account(user.id, VerifiedAccount(username="Alex"))
        third = bindings.bind_account(user.id, VerifiedAccount(username="Herobrine"))

        successor = bindings.unbind_identity(user.id, first.id)

        assert successor.id == second.id
        assert bindings.primary_binding_id(user.id) == second.id
        assert store.get_binding(first.id) is None
        assert store.get_binding(third.id) is not None
        history = _history(store, user.id)
        unbind = [e for e in history if e.action == UNBIND]
        assert unbind[0].payload == {"wasPrimary": True}
        assert unbind[0].reason == REASON_MANUAL_UNBIND
        # snapshot columns survive the deleted binding
        assert unbind[0].username == "Steve"
        auto = [e for e in history if e.reason == REASON_AUTO_REASSIGN]
        assert [(e.binding_id, e.payload) for e in auto] == [(second.id, {"auto": True})]

    def test_unbinding_last_binding_leaves_no_primary(self, store, bindings):
        user = store.create_user()
        binding = bindings.bind_account(user.id, VerifiedAccount(username="Steve"))
        assert bindings.unbind_identity(user.id, binding.id) is None
        assert bindings.primary_binding_id(user.id) is None

    def test_unbinding_non_primary_keeps_pointer(self, store, bindings):
        user = store.create_user()
        first = bindings.bind_account(user.id, VerifiedAccount(username="Steve"))
        second = bindings.bind_account(user.id, VerifiedAccount(username="Alex"))
        assert bindings.unbind_identity(user.id, second.id) is None
        assert bindings.primary_binding_id(user.id) == first.id

    def test_unbind_detaches_minecraft_profiles(self, store, bindings):
        user = store.create_user()
        binding = bindings.bind_account(
            user.id, VerifiedAccount(username="Steve", external_uuid="uuid-1")
        )
        profile = bindings.add_minecraft_profile(user.id, binding_id=binding.id)
        assert profile.nickname == "Steve"
        assert profile.external_uuid == "uuid-1"
        bindings.unbind_identity(user.id, binding.id)
        assert bindings.list_minecraft_profiles(user.id)[0].binding_id is None


class TestTransfer:
    def test_transfer_moves_binding_and_clears_source_primary(self, store, bindings):
        source = store.create_user()
        target = store.create_user()
        binding = bindings.bind_account(source.id, VerifiedAccount(username="Steve"))

        moved = bindings.transfer_identity(binding.id, target.id, operator_id="admin-1")

        assert moved.user_id == target.id
        assert bindings.primary_binding_id(source.id) is None
        assert bindings.primary_binding_id(target.id) is None
        transfer = [e for e in _history(store, target.id) if e.action == TRANSFER]
        assert len(transfer) == 1
        assert transfer[0].reason == REASON_TRANSFER
        assert transfer[0].payload == {"fromUserId": source.id, "toUserId": target.id}
        assert transfer[0].operator_id == "admin-1"

    def test_transfer_as_primary(self, store, bindings):
        source = store.create_user()
        target = store.create_user()
        bindings.bind_account(target.id, VerifiedAccount(username="Alex"))
        binding = bindings.bind_account(source.id, VerifiedAccount(username="Steve"))
        bindings.transfer_identity(binding.id, target.id, primary=True)
        assert bindings.primary_binding_id(target.id) == binding.id

    def test_transfer_to_same_user_rejected(self, store, bindings):
        user = store.create_user()
        binding = bindings.bind_account(user.id, VerifiedAccount(username="Steve"))
        with pytest.raises(ValidationError):
            bindings.transfer_identity(binding.id, user.id)

    def test_failed_transfer_leaves_no_partial_rows(self, store, bindings, monkeypatch):
        source = store.create_user()
        target = store.create_user()
        binding = bindings.bind_account(source.id, VerifiedAccount(username="Steve"))
        before = len(store.binding_history)

        def boom(entry):
            raise RuntimeError("history write failed")

        monkeypatch.setattr(store, "append_binding_history", boom)
        with pytest.raises(RuntimeError):
            bindings.transfer_identity(binding.id, target.id)

        assert store.get_binding(binding.id).user_id == source.id
        assert bindings.primary_binding_id(source.id) == binding.id
        assert len(store.binding_history) == before


class TestAdmin:
    async def test_admin_create_binding_without_password(self, store, bindings):
        user = store.create_user()
        binding = await bindings.admin_create_binding(
            user.id, "alex", operator_id="admin-1", set_primary=True
        )
        assert binding.username == "Alex"
        assert bindings.primary_binding_id(user.id) == binding.id
        audit = store.list_admin_audit()
        assert [a.action for a in audit if a.target_id == binding.id] == ["create_binding"]

    async def test_admin_create_binding_unknown_account(self, store, bindings):
        user = store.create_user()
        with pytest.raises(NotFoundError) as excinfo:
            await bindings.admin_create_binding(user.id, "nobody", operator_id="admin-1")
        assert excinfo.value.detail["code"] == AUTHME_ACCOUNT_NOT_FOUND

    def test_update_binding_fields(self, store, bindings):
        user = store.create_user()
        binding = bindings.bind_account(user.id, VerifiedAccount(username="Steve"))
        updated = bindings.update_binding(
            user.id, binding.id, operator_id="admin-1", status="suspended", notes=" banned "
        )
        assert updated.status == "SUSPENDED"
        assert updated.notes == "banned"

    def test_update_binding_rejects_unknown_status(self, store, bindings):
        user = store.create_user()
        binding = bindings.bind_account(user.id, VerifiedAccount(username="Steve"))
        with pytest.raises(ValidationError):
            bindings.update_binding(user.id, binding.id, status="deleted")

    def test_update_binding_can_transfer(self, store, bindings):
        source = store.create_user()
        target = store.create_user()
        binding = bindings.bind_account(source.id, VerifiedAccount(username="Steve"))
        updated = bindings.update_binding(
            source.id, binding.id, operator_id="admin-1", target_user_id=target.id, primary=True
        )
        assert updated.user_id == target.id
        assert bindings.primary_binding_id(target.id) == binding.id

    def test_update_binding_clears_primary(self, store, bindings):
        user = store.create_user()
        binding = bindings.bind_account(user.id, VerifiedAccount(username="Steve"))
        bindings.update_binding(user.id, binding.id, primary=False)
        assert bindings.primary_binding_id(user.id) is None
        assert any(e.action == PRIMARY_UNSET for e in _history(store, user.id))

    def test_admin_unbind_records_audit(self, store, bindings):
        user = store.create_user()
        binding = bindings.bind_account(user.id, VerifiedAccount(username="Steve"))
        bindings.admin_unbind(user.id, binding.id, operator_id="admin-1")
        assert store.get_binding(binding.id) is None
        assert "delete_binding" in [a.action for a in store.list_admin_audit()]

    def test_manual_history_entry(self, store, bindings):
        user = store.create_user()
        entry = bindings.record_manual_entry(
            user.id, reason="support ticket 42", payload={"ticket": 42}, operator_id="admin-1"
        )
        assert entry.action == MANUAL_ENTRY
        assert entry.binding_id is None
        with pytest.raises(ValidationError):
            bindings.record_manual_entry(user.id, reason="  ")


class TestHistoryPagination:
    def test_page_size_is_clamped(self, store, bindings):
        user = store.create_user()
        for index in range(3):
            bindings.record_manual_entry(user.id, reason=f"note {index}")

        result = bindings.list_binding_history(user.id, page=1, page_size=500)
        assert result["pagination"]["pageSize"] == 100
        assert result["pagination"]["total"] == 3

        result = bindings.list_binding_history(user.id, page=2, page_size=2)
        assert len(result["items"]) == 1
        assert result["pagination"] == {"total": 3, "page": 2, "pageSize": 2, "pageCount": 2}

        result = bindings.list_binding_history(user.id, page=0, page_size=0)
        assert result["pagination"]["page"] == 1
        assert result["pagination"]["pageSize"] == 1
