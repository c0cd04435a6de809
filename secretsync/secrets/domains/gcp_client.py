"""GCP Secret Manager client wrapper."""
import os
import logging
import subprocess
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Iterable, List, Optional

from google.api_core import exceptions as gexc
from google.auth import exceptions as auth_exceptions
from google.cloud import secretmanager
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .config_loader import ConfigError, load_config
from .exceptions import AuthenticationError, PermissionDeniedError, TransientError
from .models import RemoteSecretStatus, UpsertResult
from .store_config import DEFAULT_STORE_VALUES, project_id_from_values

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 10
DEFAULT_RETRIES = 3

REQUIRED_ROLE = "roles/secretmanager.admin"

_AUTH_ERRORS = (
    gexc.Unauthenticated,
    auth_exceptions.DefaultCredentialsError,
    auth_exceptions.RefreshError,
)
_TRANSIENT_ERRORS = (
    gexc.ServerError,
    gexc.TooManyRequests,
    gexc.RetryError,
    ConnectionError,
)


def detect_project_id(
    explicit: Optional[str] = None,
    config: Optional[Dict[str, Any]] = None,
    store_values: str = DEFAULT_STORE_VALUES,
) -> Optional[str]:
    """
    Resolve the GCP project that holds the secrets.

    Priority order:
    1. Explicit value (CLI flag)
    2. GCP_PROJECT environment variable
    3. Config file gcp.project_id
    4. ClusterSecretStore projectId in the infrastructure values file
    5. gcloud config get-value project

    Returns:
        Project ID string, or None if not found
    """
    if explicit:
        return explicit

    gcp_project_env = os.getenv("GCP_PROJECT")
    if gcp_project_env:
        logger.debug(f"Using GCP_PROJECT from environment: {gcp_project_env}")
        return gcp_project_env

    if config is None:
        try:
            config = load_config()
        except ConfigError as e:
            logger.error(f"Failed to load config: {e}")
            config = {}
    project_id = (config.get('gcp') or {}).get('project_id')
    if project_id:
        logger.debug(f"Using project_id from config: {project_id}")
        return project_id

    project_id = project_id_from_values(store_values)
    if project_id:
        logger.debug(f"Using project_id from {store_values}: {project_id}")
        return project_id

    try:
        result = subprocess.run(
            ["gcloud", "config", "get-value", "project"],
            capture_output=True, text=True, check=True
        )
        project_id = result.stdout.strip()
        if project_id:
            logger.debug(f"Using project from gcloud config: {project_id}")
            return project_id
    except (OSError, subprocess.CalledProcessError) as e:
        logger.warning(f"Failed to auto-detect project_id: {e}")

    return None


class GCPSecretClient:
    """Wrapper around GCP Secret Manager scoped to one project."""

    def __init__(
        self,
        project_id: str,
        client: Optional[Any] = None,
        max_workers: int = DEFAULT_CONCURRENCY,
        retries: int = DEFAULT_RETRIES,
        retry_wait: float = 1.0,
    ):
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.project_id = project_id
        self.max_workers = max_workers
        self.retries = retries
        self.retry_wait = retry_wait
        self._client = client

    @property
    def client(self) -> secretmanager.SecretManagerServiceClient:
        """Lazy-initialize client."""
        if self._client is None:
            try:
                self._client = secretmanager.SecretManagerServiceClient()
            except _AUTH_ERRORS as e:
                raise AuthenticationError(self._auth_remedy(e)) from e
        return self._client

    @property
    def parent(self) -> str:
        return f"projects/{self.project_id}"

    def secret_path(self, remote_key: str) -> str:
        return f"{self.parent}/secrets/{remote_key}"

    def _auth_remedy(self, error: Exception) -> str:
        return (
            f"Authentication to GCP Secret Manager failed for project {self.project_id}: {error}\n"
            f"Make sure you're authenticated: gcloud auth application-default login\n"
            f"or configure a service account in ~/.config/secretsync/config.yml"
        )

    def _permission_remedy(self, error: Exception, remote_key: Optional[str]) -> str:
        target = f"secret '{remote_key}'" if remote_key else "secrets"
        return (
            f"Permission denied accessing {target} in project {self.project_id}: {error}\n"
            f"Grant {REQUIRED_ROLE} to the active identity "
            f"(check with: gcloud auth list) and make sure the Secret Manager API is enabled:\n"
            f"  gcloud services enable secretmanager.googleapis.com --project {self.project_id}"
        )

    def _invoke(self, fn: Callable, request: Dict[str, Any], remote_key: Optional[str]) -> Any:
        try:
            return fn(request=request)
        except _AUTH_ERRORS as e:
            raise AuthenticationError(self._auth_remedy(e), remote_key=remote_key) from e
        except gexc.PermissionDenied as e:
            raise PermissionDeniedError(self._permission_remedy(e, remote_key), remote_key=remote_key) from e
        except _TRANSIENT_ERRORS as e:
            target = remote_key or self.project_id
            raise TransientError(f"Transient error talking to Secret Manager for {target}: {e}",
                                 remote_key=remote_key) from e

    def _log_retry(self, retry_state) -> None:
        error = retry_state.outcome.exception()
        logger.warning(
            f"Retrying Secret Manager call (attempt {retry_state.attempt_number}/{self.retries + 1}): {error}"
        )

    def _call(self, fn: Callable, request: Dict[str, Any], remote_key: Optional[str] = None) -> Any:
        """Invoke an API method, translating errors and retrying transient ones."""
        retrying = Retrying(
            stop=stop_after_attempt(self.retries + 1),
            wait=wait_exponential(multiplier=self.retry_wait, max=30),
            retry=retry_if_exception_type(TransientError),
            before_sleep=self._log_retry,
            reraise=True,
        )
        return retrying(self._invoke, fn, request, remote_key)

    def initialize(self) -> None:
        """
        Verify credentials and API access with a single one-page list call.

        Raises:
            AuthenticationError: If credentials are missing or rejected
            PermissionDeniedError: If the identity cannot list secrets
        """
        self._call(self.client.list_secrets, {"parent": self.parent, "page_size": 1})
        logger.info(f"GCP Secret Manager ready for project {self.project_id}")

    def exists(self, remote_key: str) -> bool:
        try:
            self._call(self.client.get_secret, {"name": self.secret_path(remote_key)}, remote_key)
            return True
        except gexc.NotFound:
            return False

    def status(self, remote_key: str) -> RemoteSecretStatus:
        """
        Get existence, version count and last update time of a secret.

        A missing secret is a normal result (exists=False), not an error.
        """
        name = self.secret_path(remote_key)
        try:
            self._call(self.client.get_secret, {"name": name}, remote_key)
            versions = self._call(
                lambda request: list(self.client.list_secret_versions(request=request)),
                {"parent": name},
                remote_key,
            )
        except gexc.NotFound:
            return RemoteSecretStatus(remote_key=remote_key, exists=False)

        create_times = [v.create_time for v in versions if getattr(v, "create_time", None)]
        return RemoteSecretStatus(
            remote_key=remote_key,
            exists=True,
            last_updated=max(create_times) if create_times else None,
            version_count=len(versions),
        )

    def batch_status(self, remote_keys: Iterable[str]) -> Dict[str, RemoteSecretStatus]:
        """
        Check many secrets with at most `max_workers` calls in flight.

        Returns:
            One status per distinct key, in first-seen order
        """
        keys = list(dict.fromkeys(remote_keys))
        if not keys:
            return {}

        workers = min(self.max_workers, len(keys))
        logger.info(f"Checking {len(keys)} secrets in project {self.project_id} ({workers} workers)")
        with ThreadPoolExecutor(max_workers=workers) as executor:
            statuses = list(executor.map(self.status, keys))
        return {status.remote_key: status for status in statuses}

    def _add_version(self, secret_name: str, value: str, remote_key: str) -> None:
        self._call(
            self.client.add_secret_version,
            {"parent": secret_name, "payload": {"data": value.encode("UTF-8")}},
            remote_key,
        )

    def create(self, remote_key: str, value: str) -> None:
        """Create a secret with automatic replication and store `value` as version 1."""
        secret = self._call(
            self.client.create_secret,
            {
                "parent": self.parent,
                "secret_id": remote_key,
                "secret": {"replication": {"automatic": {}}},
            },
            remote_key,
        )
        self._add_version(getattr(secret, "name", None) or self.secret_path(remote_key), value, remote_key)
        logger.info(f"Created secret {remote_key}")

    def add_version(self, remote_key: str, value: str) -> None:
        """Store `value` as a new version of an existing secret."""
        self._add_version(self.secret_path(remote_key), value, remote_key)
        logger.info(f"Added new version to secret {remote_key}")

    def upsert(self, remote_key: str, value: str) -> UpsertResult:
        """
        Create the secret if absent, otherwise append a version.

        Existence is read first; if another run creates the secret between the
        read and the create, the value is appended as a version instead.
        """
        if self.exists(remote_key):
            self.add_version(remote_key, value)
            return UpsertResult(remote_key=remote_key, created=False)

        try:
            self.create(remote_key, value)
        except gexc.AlreadyExists:
            logger.info(f"Secret {remote_key} was created concurrently, adding version instead")
            self.add_version(remote_key, value)
            return UpsertResult(remote_key=remote_key, created=False)
        return UpsertResult(remote_key=remote_key, created=True)

    def delete(self, remote_key: str) -> None:
        self._call(self.client.delete_secret, {"name": self.secret_path(remote_key)}, remote_key)
        logger.info(f"Deleted secret {remote_key}")

    def list_secrets(self) -> List[str]:
        """Secret IDs in the project."""
        secrets = self._call(
            lambda request: list(self.client.list_secrets(request=request)),
            {"parent": self.parent},
        )
        # Names look like projects/PROJECT/secrets/SECRET_ID
        return [s.name.split("/")[-1] for s in secrets if getattr(s, "name", None)]
