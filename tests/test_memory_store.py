"""Tests for the in-memory credential store."""

import threading

import pytest

from authcore.storage.errors import ConstraintViolation
from authcore.storage.memory import MemoryCredentialStore
from authcore.storage.models import GOOGLE_PROVIDER, LOCAL_PROVIDER


@pytest.fixture
def store():
    return MemoryCredentialStore()


class TestCreation:
    def test_create_local_identity(self, store):
        identity = store.create_local_identity("Alice@Example.com", "alice", "hash")

        assert identity.email == "alice@example.com"
        assert identity.auth_provider == LOCAL_PROVIDER
        assert identity.display_name == "alice"
        assert identity.is_active
        assert not identity.is_admin
        assert identity.has_auth_method()

    def test_create_federated_identity(self, store):
        identity = store.create_federated_identity(
            "bob@example.com", "bob", "google-1", display_name="Bob", avatar_url="pic"
        )

        assert identity.auth_provider == GOOGLE_PROVIDER
        assert identity.email_verified
        assert identity.google_id == "google-1"
        assert not identity.can_use_password()
        assert identity.has_auth_method()

    @pytest.mark.parametrize(
        "email,username,field",
        [
            ("ALICE@example.com", "other", "email"),
            ("other@example.com", "alice", "username"),
        ],
    )
    def test_unique_constraints(self, store, email, username, field):
        store.create_local_identity("alice@example.com", "alice", "hash")

        with pytest.raises(ConstraintViolation) as exc_info:
            store.create_local_identity(email, username, "hash")
        assert exc_info.value.field == field

    def test_unique_google_id(self, store):
        store.create_federated_identity("a@example.com", "aaa", "google-1")

        with pytest.raises(ConstraintViolation) as exc_info:
            store.create_federated_identity("b@example.com", "bbb", "google-1")
        assert exc_info.value.field == "google_id"

    def test_concurrent_signups_with_same_email(self, store):
        barrier = threading.Barrier(16)
        created, rejected = [], []

        def signup(index):
            barrier.wait()
            try:
                created.append(
                    store.create_local_identity("race@example.com", f"racer{index}", "hash")
                )
            except ConstraintViolation:
                rejected.append(index)

        threads = [threading.Thread(target=signup, args=(i,)) for i in range(16)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(created) == 1
        assert len(rejected) == 15
        assert store.count_identities() == 1


class TestLookups:
    def test_lookup_by_email_is_case_insensitive(self, store):
        created = store.create_local_identity("alice@example.com", "alice", "hash")

        assert store.get_by_email("ALICE@EXAMPLE.COM").id == created.id

    def test_lookup_by_identifier(self, store):
        created = store.create_local_identity("alice@example.com", "alice", "hash")

        assert store.get_by_identifier("alice").id == created.id
        assert store.get_by_identifier("Alice@Example.com").id == created.id
        assert store.get_by_identifier("nobody") is None

    def test_availability(self, store):
        store.create_local_identity("alice@example.com", "alice", "hash")

        assert not store.is_email_available("alice@example.com")
        assert not store.is_username_available("alice")
        assert store.is_email_available("bob@example.com")
        assert store.is_username_available("bob")

    def test_returns_copies(self, store):
        created = store.create_local_identity("alice@example.com", "alice", "hash")
        created.is_admin = True

        assert not store.get_identity(created.id).is_admin

    def test_list_and_count(self, store):
        for index in range(5):
            store.create_local_identity(f"user{index}@example.com", f"user{index}", "hash")

        assert store.count_identities() == 5
        assert len(store.list_identities(limit=2)) == 2
        assert len(store.list_identities(limit=10, offset=3)) == 2


class TestMutation:
    def test_link_google_account_keeps_existing_avatar(self, store):
        created = store.create_local_identity("alice@example.com", "alice", "hash")
        store.update_profile(created.id, "Alice", "mine.png")

        linked = store.link_google_account(created.id, "google-1", "theirs.png")

        assert linked.google_id == "google-1"
        assert linked.avatar_url == "mine.png"
        assert linked.password_hash == "hash"

    def test_link_google_account_fills_missing_avatar(self, store):
        created = store.create_local_identity("alice@example.com", "alice", "hash")

        linked = store.link_google_account(created.id, "google-1", "theirs.png")

        assert linked.avatar_url == "theirs.png"

    def test_touch_last_login(self, store):
        created = store.create_local_identity("alice@example.com", "alice", "hash")
        assert created.last_login_at is None

        stamped = store.touch_last_login(created.id)

        assert stamped is not None
        assert store.get_identity(created.id).last_login_at == stamped

    def test_flags_and_password(self, store):
        created = store.create_local_identity("alice@example.com", "alice", "hash")

        assert store.set_admin(created.id, True)
        assert store.set_active(created.id, False)
        assert store.update_password(created.id, "new-hash")

        identity = store.get_identity(created.id)
        assert identity.is_admin
        assert not identity.is_active
        assert identity.password_hash == "new-hash"

    def test_missing_identity(self, store):
        assert store.get_identity("missing") is None
        assert store.update_profile("missing", "x", None) is None
        assert store.link_google_account("missing", "google-1") is None
        assert store.touch_last_login("missing") is None
        assert not store.set_admin("missing", True)
        assert not store.update_password("missing", "hash")
