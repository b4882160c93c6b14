"""Runtime wiring and the admin bootstrap script, memory store only."""

import importlib.util
from pathlib import Path

import pytest

from authcore.config import Settings
from authcore.runtime import Runtime
from authcore.service.oauth import MemoryOAuthStateStore
from authcore.storage.memory import MemoryCredentialStore

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"


def load_bootstrap():
    spec = importlib.util.spec_from_file_location("bootstrap_admin", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture
def runtime():
    runtime = Runtime(Settings(jwt_secret="runtime-secret", use_memory_store=True))
    yield runtime
    runtime.close()


class TestRuntime:
    def test_builds_memory_graph(self, runtime):
        assert isinstance(runtime.store, MemoryCredentialStore)
        assert isinstance(runtime.oauth_states, MemoryOAuthStateStore)
        assert runtime.pool is None
        assert runtime.auth.store is runtime.store
        assert runtime.auth.broker is runtime.broker

    def test_signup_and_resolve(self, runtime):
        result = runtime.auth.signup("carol@example.com", "carol", "s3cretpass")

        assert runtime.auth.resolve(f"Bearer {result.access_token}").username == "carol"

    def test_instances_do_not_share_state(self):
        first = Runtime(Settings(jwt_secret="one", use_memory_store=True))
        second = Runtime(Settings(jwt_secret="two", use_memory_store=True))
        try:
            result = first.auth.signup("dave@example.com", "dave", "s3cretpass")

            assert second.store.count_identities() == 0
            assert second.auth.resolve(result.access_token) is None
        finally:
            first.close()
            second.close()


class TestBootstrapAdmin:
    def test_creates_admin(self, runtime):
        bootstrap = load_bootstrap()

        result = bootstrap.bootstrap_admin(runtime, "root@example.com", "root", "s3cretpass")

        assert result["status"] == "created"
        assert runtime.store.get_by_email("root@example.com").is_admin

    def test_promotes_existing_identity(self, runtime):
        bootstrap = load_bootstrap()
        runtime.auth.signup("erin@example.com", "erin", "s3cretpass")

        assert bootstrap.bootstrap_admin(runtime, "erin@example.com", "erin", "")["status"] == "promoted"
        assert bootstrap.bootstrap_admin(runtime, "erin@example.com", "erin", "")["status"] == (
            "already_admin"
        )

    def test_dry_run_changes_nothing(self, runtime):
        bootstrap = load_bootstrap()

        result = bootstrap.bootstrap_admin(runtime, "root@example.com", "root", "x", dry_run=True)

        assert result["status"] == "dry_run"
        assert runtime.store.count_identities() == 0

    def test_default_username(self):
        bootstrap = load_bootstrap()

        assert bootstrap.default_username("ops.team@example.com") == "opsteam"
        assert bootstrap.default_username("a@example.com") == "admina"
