"""Tests for the Secret Manager client wrapper."""
import subprocess
from types import SimpleNamespace

import pytest
import yaml
from google.api_core import exceptions as gexc

from secretsync.secrets.domains import gcp_client
from secretsync.secrets.domains.exceptions import AuthenticationError, PermissionDeniedError, TransientError
from secretsync.secrets.domains.gcp_client import GCPSecretClient, detect_project_id


class TestStatus:
    """Existence and metadata lookups."""

    def test_missing_secret_is_not_an_error(self, store):
        status = store.status("absent")

        assert status.exists is False
        assert status.version_count is None
        assert status.last_updated is None
        assert store.exists("absent") is False

    def test_existing_secret_reports_versions(self, store):
        store.create("db-pass", "one")
        store.add_version("db-pass", "two")

        status = store.status("db-pass")

        assert status.exists is True
        assert status.version_count == 2
        assert status.last_updated is not None
        assert store.exists("db-pass") is True

    def test_batch_status_deduplicates_and_keeps_order(self, store, secret_manager):
        store.create("b", "x")

        statuses = store.batch_status(["b", "a", "b", "c"])

        assert list(statuses) == ["b", "a", "c"]
        assert statuses["b"].exists is True
        assert statuses["a"].exists is False
        get_calls = [r["name"] for m, r in secret_manager.calls if m == "get_secret"]
        assert sorted(get_calls) == sorted(store.secret_path(k) for k in ("b", "a", "c"))

    def test_batch_status_of_nothing(self, store, secret_manager):
        assert store.batch_status([]) == {}
        assert secret_manager.calls == []

    def test_concurrency_is_bounded(self, secret_manager):
        secret_manager.latency = 0.02
        client = GCPSecretClient("test-project", client=secret_manager, max_workers=3, retry_wait=0)

        statuses = client.batch_status([f"key-{i}" for i in range(12)])

        assert len(statuses) == 12
        assert 1 < secret_manager.max_in_flight <= 3

    def test_invalid_worker_count(self, secret_manager):
        with pytest.raises(ValueError):
            GCPSecretClient("test-project", client=secret_manager, max_workers=0)


class TestWrites:
    """Create, upsert and delete."""

    def test_create_uses_automatic_replication(self, store, secret_manager):
        store.create("db-pass", "s3cret")

        method, request = secret_manager.calls[0]
        assert method == "create_secret"
        assert request == {
            "parent": "projects/test-project",
            "secret_id": "db-pass",
            "secret": {"replication": {"automatic": {}}},
        }
        assert secret_manager.payloads("test-project", "db-pass") == ["s3cret"]

    def test_upsert_is_idempotent(self, store, secret_manager):
        first = store.upsert("db-pass", "one")
        second = store.upsert("db-pass", "two")

        assert first.created is True
        assert second.created is False
        assert secret_manager.payloads("test-project", "db-pass") == ["one", "two"]
        assert store.status("db-pass").version_count == 2

    def test_upsert_recovers_from_create_race(self, store, secret_manager):
        secret_manager.fail("create_secret", gexc.AlreadyExists("created elsewhere"))
        secret_manager.secrets["projects/test-project/secrets/db-pass"] = []

        # exists() sees the secret, so force the race by hiding it from get_secret once
        secret_manager.fail("get_secret", gexc.NotFound("not yet"))
        result = store.upsert("db-pass", "value")

        assert result.created is False
        assert secret_manager.payloads("test-project", "db-pass") == ["value"]

    def test_delete_and_list(self, store):
        store.create("a", "1")
        store.create("b", "2")

        assert store.list_secrets() == ["a", "b"]

        store.delete("a")

        assert store.list_secrets() == ["b"]
        assert store.exists("a") is False

    def test_initialize_lists_one_page(self, store, secret_manager):
        store.initialize()

        assert secret_manager.calls == [("list_secrets", {"parent": "projects/test-project", "page_size": 1})]


class TestErrors:
    """Error translation and retries."""

    def test_transient_errors_are_retried(self, store, secret_manager):
        secret_manager.fail("get_secret", gexc.ServiceUnavailable("busy"), gexc.TooManyRequests("slow down"))

        status = store.status("absent")

        assert status.exists is False
        assert [m for m, _ in secret_manager.calls].count("get_secret") == 3

    def test_retries_exhausted(self, secret_manager):
        client = GCPSecretClient("test-project", client=secret_manager, retries=2, retry_wait=0)
        secret_manager.fail("get_secret", *[gexc.InternalServerError("boom") for _ in range(5)])

        with pytest.raises(TransientError) as excinfo:
            client.status("db-pass")

        assert excinfo.value.remote_key == "db-pass"
        assert [m for m, _ in secret_manager.calls].count("get_secret") == 3

    def test_permission_denied_is_not_retried(self, store, secret_manager):
        secret_manager.fail("create_secret", gexc.PermissionDenied("nope"))

        with pytest.raises(PermissionDeniedError) as excinfo:
            store.create("db-pass", "x")

        assert "roles/secretmanager.admin" in str(excinfo.value)
        assert excinfo.value.remote_key == "db-pass"
        assert [m for m, _ in secret_manager.calls].count("create_secret") == 1

    def test_unauthenticated(self, store, secret_manager):
        secret_manager.fail("list_secrets", gexc.Unauthenticated("expired"))

        with pytest.raises(AuthenticationError, match="gcloud auth application-default login"):
            store.initialize()


class TestDetectProjectId:
    """Project resolution order."""

    @pytest.fixture(autouse=True)
    def no_gcloud(self, monkeypatch):
        monkeypatch.delenv("GCP_PROJECT", raising=False)

        def fail(*args, **kwargs):
            raise FileNotFoundError("gcloud")

        monkeypatch.setattr(gcp_client.subprocess, "run", fail)

    def test_explicit_wins(self, monkeypatch):
        monkeypatch.setenv("GCP_PROJECT", "from-env")

        assert detect_project_id("explicit", config={"gcp": {"project_id": "from-config"}}) == "explicit"

    def test_environment_before_config(self, monkeypatch):
        monkeypatch.setenv("GCP_PROJECT", "from-env")

        assert detect_project_id(config={"gcp": {"project_id": "from-config"}}) == "from-env"

    def test_config(self, tmp_path):
        missing = str(tmp_path / "main.yaml")

        assert detect_project_id(config={"gcp": {"project_id": "from-config"}}, store_values=missing) == "from-config"

    def test_values_file(self, tmp_path):
        values = tmp_path / "main.yaml"
        values.write_text(yaml.safe_dump({
            "externalSecrets": {"stores": [{"name": "gcp-secretstore", "provider": "gcp",
                                            "gcp": {"projectId": "from-values"}}]},
        }))

        assert detect_project_id(config={"gcp": {"project_id": None}}, store_values=str(values)) == "from-values"

    def test_templated_values_are_ignored(self, tmp_path):
        values = tmp_path / "main.yaml"
        values.write_text(yaml.safe_dump({
            "externalSecrets": {"stores": [{"name": "s", "provider": "gcp",
                                            "gcp": {"projectId": "{{ .Values.project }}"}}]},
        }))

        assert detect_project_id(config={}, store_values=str(values)) is None

    def test_gcloud_fallback(self, monkeypatch, tmp_path):
        def run(cmd, **kwargs):
            assert cmd == ["gcloud", "config", "get-value", "project"]
            return SimpleNamespace(stdout="from-gcloud\n")

        monkeypatch.setattr(gcp_client.subprocess, "run", run)

        assert detect_project_id(config={}, store_values=str(tmp_path / "none.yaml")) == "from-gcloud"

    def test_gcloud_failure(self, monkeypatch, tmp_path):
        def run(cmd, **kwargs):
            raise subprocess.CalledProcessError(1, cmd)

        monkeypatch.setattr(gcp_client.subprocess, "run", run)

        assert detect_project_id(config={}, store_values=str(tmp_path / "none.yaml")) is None
