"""Domain models for values-driven secret management."""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional

from .exceptions import DescriptorValidationError

GENERATOR_KINDS = ("password", "key", "token", "string")

DEFAULT_SECRET_STORE = "gcp-secretstore"
DEFAULT_REFRESH_INTERVAL = "1h"
DEFAULT_NAMESPACE = "default"
NOT_FOUND_MESSAGE = "ExternalSecret not found"


class ProvisioningMode(Enum):
    """How a missing secret gets its value."""
    AUTO_GENERATE = "auto-generate"
    MANUAL_REQUIRED = "manual-required"
    OPTIONAL = "optional"


@dataclass(frozen=True)
class GenerationSpec:
    """Generator metadata declared next to a remote key."""
    enabled: bool
    kind: str
    length: Optional[int] = None
    description: Optional[str] = None


@dataclass(frozen=True)
class SecretDescriptor:
    """One required secret discovered in a values file."""
    source_location: str
    deployment_scope: str
    chart_name: str
    remote_key: str
    environment: Optional[str] = None
    generation_spec: Optional[GenerationSpec] = None
    secret_store_ref: str = DEFAULT_SECRET_STORE
    refresh_interval: str = DEFAULT_REFRESH_INTERVAL
    namespace_hint: Optional[str] = None
    optional: bool = False

    @property
    def mode(self) -> ProvisioningMode:
        if self.generation_spec is not None and self.generation_spec.enabled:
            return ProvisioningMode.AUTO_GENERATE
        if self.optional:
            return ProvisioningMode.OPTIONAL
        return ProvisioningMode.MANUAL_REQUIRED

    @property
    def delivery_name(self) -> str:
        """Name of the ExternalSecret the chart templates render for this secret."""
        return f"{self.chart_name}-credentials"

    @property
    def namespace(self) -> str:
        return self.namespace_hint or DEFAULT_NAMESPACE

    def validate(self) -> None:
        """
        Check the descriptor is well-formed.

        Raises:
            DescriptorValidationError: If remote_key is empty or an enabled
                generator declares an unrecognized kind
        """
        if not self.remote_key:
            raise DescriptorValidationError(
                f"Chart '{self.chart_name}' in {self.source_location} declares a secret "
                f"with an empty remoteKey",
                source_location=self.source_location,
                chart_name=self.chart_name,
            )

        spec = self.generation_spec
        if spec is not None and spec.enabled and spec.kind not in GENERATOR_KINDS:
            raise DescriptorValidationError(
                f"Secret '{self.remote_key}' in {self.source_location} has generator type "
                f"'{spec.kind}'. Expected one of: {', '.join(GENERATOR_KINDS)}",
                source_location=self.source_location,
                chart_name=self.chart_name,
                remote_key=self.remote_key,
            )


@dataclass
class ScanResults:
    """Output of a values scan."""
    secrets: List[SecretDescriptor] = field(default_factory=list)
    deployment_files: List[str] = field(default_factory=list)
    infrastructure_files: List[str] = field(default_factory=list)
    invalid: List[DescriptorValidationError] = field(default_factory=list)

    @property
    def total_secrets(self) -> int:
        return len(self.secrets)

    @property
    def secrets_with_generator(self) -> int:
        return sum(1 for s in self.secrets if s.mode is ProvisioningMode.AUTO_GENERATE)


@dataclass(frozen=True)
class RemoteSecretStatus:
    """State of one secret in the remote backend."""
    remote_key: str
    exists: bool
    last_updated: Optional[datetime] = None
    version_count: Optional[int] = None


@dataclass(frozen=True)
class UpsertResult:
    remote_key: str
    created: bool


@dataclass(frozen=True)
class Condition:
    type: str
    status: str
    reason: Optional[str] = None
    message: Optional[str] = None


@dataclass(frozen=True)
class ConvergenceStatus:
    """Snapshot of an ExternalSecret's status as read from the cluster."""
    name: str
    namespace: str
    exists: bool
    synced: bool = False
    ready: bool = False
    materialized: bool = False
    last_sync_time: Optional[datetime] = None
    conditions: tuple = ()
    error_message: Optional[str] = None


class ConvergenceState(Enum):
    UNKNOWN = "unknown"
    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"
    TIMED_OUT = "timed-out"


@dataclass
class ConvergenceResult:
    """Outcome of checking (or waiting on) one delivery object."""
    name: str
    namespace: str
    state: ConvergenceState
    synced: bool = False
    ready: bool = False
    error: Optional[str] = None
    remote_keys: List[str] = field(default_factory=list)

    @property
    def exists(self) -> bool:
        return self.error != NOT_FOUND_MESSAGE


@dataclass
class DeploymentValidation:
    deployment: str
    namespace: str
    results: List[ConvergenceResult] = field(default_factory=list)

    @property
    def all_synced(self) -> bool:
        return all(r.synced for r in self.results)

    @property
    def all_ready(self) -> bool:
        return all(r.ready for r in self.results)

    @property
    def error_count(self) -> int:
        return sum(1 for r in self.results if not r.ready)


@dataclass
class ValidationSummary:
    """Aggregate of a batch validation across deployments."""
    deployments: List[DeploymentValidation] = field(default_factory=list)

    @property
    def results(self) -> List[ConvergenceResult]:
        return [r for d in self.deployments for r in d.results]

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def synced(self) -> int:
        return sum(1 for r in self.results if r.synced)

    @property
    def ready(self) -> int:
        return sum(1 for r in self.results if r.ready)

    @property
    def errors(self) -> int:
        return sum(d.error_count for d in self.deployments)

    @property
    def success(self) -> bool:
        return self.errors == 0 and self.synced == self.total
