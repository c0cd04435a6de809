"""ExternalSecret sync validation against a Kubernetes cluster."""
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from kubernetes.client.exceptions import ApiException

from .models import (
    NOT_FOUND_MESSAGE,
    Condition,
    ConvergenceResult,
    ConvergenceState,
    ConvergenceStatus,
    DeploymentValidation,
    SecretDescriptor,
    ValidationSummary,
)

logger = logging.getLogger(__name__)

ESO_GROUP = "external-secrets.io"
ESO_VERSION = "v1beta1"

DEFAULT_POLL_INTERVAL = 2.0
DEFAULT_TIMEOUT = 60.0
DEFAULT_CONCURRENCY = 10

READY = "Ready"
SECRET_SYNCED = "SecretSynced"


def _parse_time(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def parse_external_secret(name: str, namespace: str, obj: Dict[str, Any]) -> ConvergenceStatus:
    """
    Build a ConvergenceStatus from an ExternalSecret object.

    `ready` comes from the Ready condition. `synced` comes from a
    SecretSynced condition, or from a true Ready condition whose reason is
    SecretSynced, which is how the External Secrets Operator reports it.
    """
    status = obj.get("status") or {}
    conditions = tuple(
        Condition(
            type=c.get("type", ""),
            status=c.get("status", ""),
            reason=c.get("reason"),
            message=c.get("message"),
        )
        for c in status.get("conditions") or []
        if isinstance(c, dict)
    )
    by_type = {c.type: c for c in conditions}
    ready_condition = by_type.get(READY)
    synced_condition = by_type.get(SECRET_SYNCED)

    ready = ready_condition is not None and ready_condition.status == "True"
    if synced_condition is not None:
        synced = synced_condition.status == "True"
    else:
        synced = ready and ready_condition.reason == SECRET_SYNCED

    error_message = None
    for condition in (ready_condition, synced_condition):
        if condition is not None and condition.status == "False" and condition.message:
            error_message = condition.message
            break

    binding = status.get("binding") or {}
    return ConvergenceStatus(
        name=name,
        namespace=namespace,
        exists=True,
        synced=synced,
        ready=ready,
        materialized=bool(binding.get("name")),
        last_sync_time=_parse_time(status.get("refreshTime") or status.get("syncedTime")),
        conditions=conditions,
        error_message=error_message,
    )


class ExternalSecretReader:
    """Reads ExternalSecret and ClusterSecretStore objects through the Kubernetes API."""

    def __init__(
        self,
        api: Optional[Any] = None,
        kubeconfig: Optional[str] = None,
        context: Optional[str] = None,
    ):
        self._api = api
        self.kubeconfig = kubeconfig
        self.context = context
        self._configured = False

    def _configure(self) -> None:
        if self._configured:
            return
        try:
            k8s_config.load_kube_config(config_file=self.kubeconfig, context=self.context)
        except k8s_config.ConfigException:
            logger.debug("No kubeconfig found, trying in-cluster configuration")
            k8s_config.load_incluster_config()
        self._configured = True

    @property
    def api(self) -> k8s_client.CustomObjectsApi:
        if self._api is None:
            self._configure()
            self._api = k8s_client.CustomObjectsApi()
        return self._api

    def status(self, name: str, namespace: str) -> ConvergenceStatus:
        """Read one ExternalSecret. Failures are reported in error_message, never raised."""
        try:
            obj = self.api.get_namespaced_custom_object(
                ESO_GROUP, ESO_VERSION, namespace, "externalsecrets", name
            )
        except ApiException as e:
            if e.status == 404:
                return ConvergenceStatus(name=name, namespace=namespace, exists=False,
                                         error_message=NOT_FOUND_MESSAGE)
            logger.warning(f"Failed to read ExternalSecret {namespace}/{name}: {e.status} {e.reason}")
            return ConvergenceStatus(name=name, namespace=namespace, exists=False,
                                     error_message=f"Kubernetes API error {e.status}: {e.reason}")
        return parse_external_secret(name, namespace, obj)

    def list_names(self, namespace: str) -> List[str]:
        """Names of all ExternalSecrets in a namespace; empty if they cannot be listed."""
        try:
            listing = self.api.list_namespaced_custom_object(
                ESO_GROUP, ESO_VERSION, namespace, "externalsecrets"
            )
        except ApiException as e:
            logger.warning(f"Failed to list ExternalSecrets in {namespace}: {e.status} {e.reason}")
            return []
        names = [(item.get("metadata") or {}).get("name") for item in listing.get("items") or []]
        return [n for n in names if n]

    def cluster_store_status(self, name: str) -> ConvergenceStatus:
        """Readiness of a ClusterSecretStore, reported in the same shape as an ExternalSecret."""
        try:
            obj = self.api.get_cluster_custom_object(ESO_GROUP, ESO_VERSION, "clustersecretstores", name)
        except ApiException as e:
            message = "ClusterSecretStore not found" if e.status == 404 else f"Kubernetes API error {e.status}: {e.reason}"
            return ConvergenceStatus(name=name, namespace="", exists=False, error_message=message)
        return parse_external_secret(name, "", obj)


class ConvergenceValidator:
    """
    Checks and waits for ExternalSecrets to report Ready and SecretSynced.

    `clock` and `sleep` are injectable so the polling loop can be driven
    without real waits.
    """

    def __init__(
        self,
        reader: ExternalSecretReader,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        timeout: float = DEFAULT_TIMEOUT,
        max_workers: int = DEFAULT_CONCURRENCY,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.reader = reader
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.max_workers = max_workers
        self.clock = clock
        self.sleep = sleep

    def check(self, name: str, namespace: str) -> ConvergenceResult:
        """Single observation: READY, FAILED, or PENDING."""
        status = self.reader.status(name, namespace)
        if status.error_message:
            state = ConvergenceState.FAILED
        elif status.ready and status.synced:
            state = ConvergenceState.READY
        else:
            state = ConvergenceState.PENDING
        return ConvergenceResult(
            name=name,
            namespace=namespace,
            state=state,
            synced=status.synced,
            ready=status.ready,
            error=status.error_message,
        )

    def wait_for_convergence(self, name: str, namespace: str, timeout: Optional[float] = None) -> ConvergenceResult:
        """
        Poll an ExternalSecret until it converges, fails, or the timeout elapses.

        Exit predicates, in priority order:
        1. An error message (including "not found") -> FAILED immediately
        2. Ready and SecretSynced both true -> READY
        3. Deadline reached -> TIMED_OUT

        Args:
            name: ExternalSecret name
            namespace: ExternalSecret namespace
            timeout: Seconds to wait (defaults to the validator's timeout)

        Returns:
            ConvergenceResult with the final state
        """
        timeout = self.timeout if timeout is None else timeout
        deadline = self.clock() + timeout
        state = ConvergenceState.UNKNOWN

        while True:
            result = self.check(name, namespace)
            if result.state in (ConvergenceState.FAILED, ConvergenceState.READY):
                logger.info(f"ExternalSecret {namespace}/{name}: {result.state.value}")
                return result

            if state is ConvergenceState.UNKNOWN:
                logger.debug(f"Waiting for ExternalSecret {namespace}/{name} to sync")
            state = ConvergenceState.PENDING

            remaining = deadline - self.clock()
            if remaining <= 0:
                result.state = ConvergenceState.TIMED_OUT
                result.error = f"Timeout waiting for ExternalSecret {namespace}/{name} to sync after {timeout:g}s"
                logger.warning(result.error)
                return result

            self.sleep(min(self.poll_interval, remaining))

    def _run(self, targets: List[Tuple[str, str]], wait: bool, timeout: Optional[float]) -> List[ConvergenceResult]:
        if not targets:
            return []

        def observe(target: Tuple[str, str]) -> ConvergenceResult:
            name, namespace = target
            if wait:
                return self.wait_for_convergence(name, namespace, timeout)
            return self.check(name, namespace)

        workers = min(self.max_workers, len(targets))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            return list(executor.map(observe, targets))

    def validate(
        self,
        descriptors: Iterable[SecretDescriptor],
        wait: bool = True,
        timeout: Optional[float] = None,
    ) -> ValidationSummary:
        """
        Validate the ExternalSecrets expected for a set of descriptors.

        Descriptors are grouped by (deployment, namespace); each chart maps to
        one ExternalSecret named "<chart>-credentials", checked once per group.

        Args:
            descriptors: Discovered secrets
            wait: Poll each object until it converges instead of observing once
            timeout: Per-object wait timeout

        Returns:
            ValidationSummary with per-deployment results in discovery order
        """
        groups: Dict[Tuple[str, str], Dict[str, List[str]]] = {}
        for descriptor in descriptors:
            objects = groups.setdefault((descriptor.deployment_scope, descriptor.namespace), {})
            keys = objects.setdefault(descriptor.delivery_name, [])
            if descriptor.remote_key not in keys:
                keys.append(descriptor.remote_key)

        targets = [(name, namespace) for (_, namespace), objects in groups.items() for name in objects]
        results = iter(self._run(targets, wait, timeout))

        summary = ValidationSummary()
        for (deployment, namespace), objects in groups.items():
            group = DeploymentValidation(deployment=deployment, namespace=namespace)
            for remote_keys in objects.values():
                result = next(results)
                result.remote_keys = list(remote_keys)
                group.results.append(result)
            summary.deployments.append(group)

        logger.info(
            f"Validated {summary.total} ExternalSecrets: {summary.ready} ready, "
            f"{summary.synced} synced, {summary.errors} errors"
        )
        return summary

    def deployment_status(self, deployment: str, namespace: str) -> Optional[DeploymentValidation]:
        """Observe every ExternalSecret in a namespace; None when there are none."""
        names = self.reader.list_names(namespace)
        if not names:
            return None
        return DeploymentValidation(
            deployment=deployment,
            namespace=namespace,
            results=self._run([(name, namespace) for name in names], wait=False, timeout=None),
        )
