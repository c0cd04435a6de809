"""Shared fixtures: in-memory Secret Manager, ExternalSecret reader, fake clock, values tree."""
import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace

import pytest
import yaml
from google.api_core import exceptions as gexc

from secretsync.secrets.domains.gcp_client import GCPSecretClient
from secretsync.secrets.domains.models import ConvergenceStatus, NOT_FOUND_MESSAGE


class FakeSecretManager:
    """In-memory stand-in for SecretManagerServiceClient (request-dict call style)."""

    def __init__(self, latency: float = 0.0):
        self.secrets = {}  # secret name -> list of (payload bytes, create_time)
        self.errors = {}  # method name -> exceptions raised on successive calls
        self.calls = []
        self.latency = latency
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()
        self._clock = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def fail(self, method, *exceptions):
        self.errors.setdefault(method, []).extend(exceptions)

    def _enter(self, method, request):
        with self._lock:
            self.calls.append((method, request))
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            pending = self.errors.get(method)
            error = pending.pop(0) if pending else None
        if self.latency:
            time.sleep(self.latency)
        if error is not None:
            self._exit()
            raise error

    def _exit(self):
        with self._lock:
            self.in_flight -= 1

    def _require(self, name):
        if name not in self.secrets:
            self._exit()
            raise gexc.NotFound(f"Secret [{name}] not found")

    def get_secret(self, request):
        self._enter("get_secret", request)
        self._require(request["name"])
        self._exit()
        return SimpleNamespace(name=request["name"])

    def list_secret_versions(self, request):
        self._enter("list_secret_versions", request)
        self._require(request["parent"])
        versions = self.secrets[request["parent"]]
        self._exit()
        # Newest first, like the real API
        return [
            SimpleNamespace(name=f"{request['parent']}/versions/{i + 1}", create_time=created)
            for i, (_, created) in reversed(list(enumerate(versions)))
        ]

    def create_secret(self, request):
        self._enter("create_secret", request)
        name = f"{request['parent']}/secrets/{request['secret_id']}"
        if name in self.secrets:
            self._exit()
            raise gexc.AlreadyExists(f"Secret [{name}] already exists")
        self.secrets[name] = []
        self._exit()
        return SimpleNamespace(name=name)

    def add_secret_version(self, request):
        self._enter("add_secret_version", request)
        self._require(request["parent"])
        with self._lock:
            self._clock += timedelta(minutes=1)
            self.secrets[request["parent"]].append((request["payload"]["data"], self._clock))
        self._exit()
        return SimpleNamespace(name=f"{request['parent']}/versions/{len(self.secrets[request['parent']])}")

    def delete_secret(self, request):
        self._enter("delete_secret", request)
        self._require(request["name"])
        del self.secrets[request["name"]]
        self._exit()

    def list_secrets(self, request):
        self._enter("list_secrets", request)
        prefix = f"{request['parent']}/secrets/"
        names = [n for n in self.secrets if n.startswith(prefix)]
        self._exit()
        return [SimpleNamespace(name=n) for n in names]

    def payloads(self, project, remote_key):
        return [data.decode("UTF-8") for data, _ in self.secrets[f"projects/{project}/secrets/{remote_key}"]]


class FakeReader:
    """ExternalSecret reader returning scripted statuses; the last one repeats."""

    def __init__(self):
        self.scripts = {}
        self.calls = []
        self.namespaces = {}

    def set(self, namespace, name, *statuses):
        self.scripts[(namespace, name)] = list(statuses)
        self.namespaces.setdefault(namespace, []).append(name)

    def status(self, name, namespace):
        self.calls.append((namespace, name))
        script = self.scripts.get((namespace, name))
        if not script:
            return ConvergenceStatus(name=name, namespace=namespace, exists=False,
                                     error_message=NOT_FOUND_MESSAGE)
        return script.pop(0) if len(script) > 1 else script[0]

    def list_names(self, namespace):
        return list(self.namespaces.get(namespace, []))


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def es_status(name, namespace="default", ready=False, synced=False, error=None):
    return ConvergenceStatus(
        name=name,
        namespace=namespace,
        exists=True,
        ready=ready,
        synced=synced,
        materialized=ready,
        error_message=error,
    )


@pytest.fixture
def secret_manager():
    return FakeSecretManager()


@pytest.fixture
def store(secret_manager):
    return GCPSecretClient("test-project", client=secret_manager, retry_wait=0)


@pytest.fixture
def reader():
    return FakeReader()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def values_tree(tmp_path):
    """Write values files under tmp_path: values_tree({"deployments/acme-staging.yaml": {...}})."""

    def write(files):
        for relative, content in files.items():
            path = Path(tmp_path) / "values" / relative
            path.parent.mkdir(parents=True, exist_ok=True)
            if isinstance(content, str):
                path.write_text(content)
            else:
                path.write_text(yaml.safe_dump(content, sort_keys=False))
        return tmp_path

    return write


@pytest.fixture
def make_status():
    return es_status
