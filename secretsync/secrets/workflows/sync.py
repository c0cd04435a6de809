"""Sync workflow: discover -> check -> generate -> validate."""
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from ..domains.gcp_client import GCPSecretClient
from ..domains.generator import check_strength, generate_secret_value
from ..domains.models import (
    ConvergenceState,
    GenerationSpec,
    ProvisioningMode,
    RemoteSecretStatus,
    ScanResults,
    SecretDescriptor,
    ValidationSummary,
)
from ..domains.scanner import DEFAULT_PATTERNS, scan
from ..domains.validator import ConvergenceValidator

logger = logging.getLogger(__name__)

InputProvider = Callable[[SecretDescriptor], str]

NO_VALUE_PROVIDED = "no value provided"


@dataclass
class CheckReport:
    statuses: Dict[str, RemoteSecretStatus] = field(default_factory=dict)
    existing: List[SecretDescriptor] = field(default_factory=list)
    missing: List[SecretDescriptor] = field(default_factory=list)


@dataclass(frozen=True)
class PlannedAction:
    """What the generate stage will do for one missing remote key."""
    descriptor: SecretDescriptor
    mode: ProvisioningMode

    @property
    def remote_key(self) -> str:
        return self.descriptor.remote_key


@dataclass(frozen=True)
class Failure:
    """A remote key or delivery object that did not reach its goal, and why."""
    target: str
    reason: str

    def __str__(self) -> str:
        return f"{self.target}: {self.reason}"


@dataclass
class GenerateReport:
    planned: List[PlannedAction] = field(default_factory=list)
    created: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failures: List[Failure] = field(default_factory=list)
    cancelled: bool = False
    dry_run: bool = False


@dataclass
class SyncReport:
    scan: ScanResults
    check: Optional[CheckReport] = None
    generate: Optional[GenerateReport] = None
    validation: Optional[ValidationSummary] = None
    dry_run: bool = False

    @property
    def failures(self) -> List[Failure]:
        failures: List[Failure] = []
        if self.generate is not None:
            failures.extend(self.generate.failures)
        if self.validation is not None:
            for result in self.validation.results:
                if result.state is ConvergenceState.READY:
                    continue
                keys = ", ".join(result.remote_keys)
                reason = result.error or f"not synced (state: {result.state.value})"
                failures.append(Failure(
                    target=f"ExternalSecret {result.namespace}/{result.name} [{keys}]",
                    reason=reason,
                ))
        return failures

    @property
    def success(self) -> bool:
        if self.generate is not None and (self.generate.failures or self.generate.cancelled):
            return False
        if self.dry_run:
            return True
        return self.validation is not None and self.validation.success


class SecretSync:
    """
    Idempotent secrets pipeline over values files, Secret Manager and the cluster.

    Each stage can run on its own; `sync` runs them in order, consuming the
    full output of one stage before starting the next.
    """

    def __init__(
        self,
        store: GCPSecretClient,
        validator: Optional[ConvergenceValidator] = None,
        input_provider: Optional[InputProvider] = None,
        confirm: Optional[Callable[[List[PlannedAction]], bool]] = None,
        generate: Callable[[GenerationSpec], str] = generate_secret_value,
        patterns: Sequence[str] = DEFAULT_PATTERNS,
        root: Optional[str] = None,
    ):
        self.store = store
        self.validator = validator
        self.input_provider = input_provider
        self.confirm = confirm
        self.generate_value = generate
        self.patterns = patterns
        self.root = root

    def discover(self, deployment: Optional[str] = None) -> ScanResults:
        return scan(self.patterns, deployment=deployment, root=self.root)

    def check(self, descriptors: Sequence[SecretDescriptor]) -> CheckReport:
        """Query the backend once per distinct remote key and split descriptors by existence."""
        statuses = self.store.batch_status(d.remote_key for d in descriptors)
        report = CheckReport(statuses=statuses)
        for descriptor in descriptors:
            status = statuses[descriptor.remote_key]
            # A secret with no versions (interrupted create) still needs a value
            if status.exists and status.version_count != 0:
                report.existing.append(descriptor)
            else:
                report.missing.append(descriptor)
        logger.info(f"{len(report.existing)} secrets exist, {len(report.missing)} missing")
        return report

    def plan(self, missing: Sequence[SecretDescriptor]) -> List[PlannedAction]:
        """One action per distinct remote key; the first declaration of a key wins."""
        seen = set()
        actions = []
        for descriptor in missing:
            if descriptor.remote_key in seen:
                continue
            seen.add(descriptor.remote_key)
            actions.append(PlannedAction(descriptor=descriptor, mode=descriptor.mode))
        return actions

    def _manual_value(self, descriptor: SecretDescriptor) -> Optional[str]:
        if self.input_provider is None:
            return None
        value = self.input_provider(descriptor)
        if not value:
            return None
        strength = check_strength(value)
        if not strength.valid:
            logger.warning(
                f"Value entered for {descriptor.remote_key} is weak (score {strength.score}/4): "
                f"{'; '.join(strength.feedback)}"
            )
        return value

    def generate(self, missing: Sequence[SecretDescriptor], dry_run: bool = False) -> GenerateReport:
        """
        Provide values for missing secrets and write them to the backend.

        Auto-generated secrets are synthesized; others are requested from the
        input provider. An empty answer skips an optional secret and is a
        failure for a required one. Dry-run only reports the plan.
        """
        report = GenerateReport(planned=self.plan(missing), dry_run=dry_run)
        if not report.planned:
            return report

        if dry_run:
            for action in report.planned:
                logger.info(f"[DRY RUN] Would create {action.remote_key} ({action.mode.value})")
            return report

        if self.confirm is not None and not self.confirm(report.planned):
            logger.info("Secret creation cancelled")
            report.cancelled = True
            return report

        for action in report.planned:
            descriptor = action.descriptor
            if action.mode is ProvisioningMode.AUTO_GENERATE:
                value = self.generate_value(descriptor.generation_spec)
            else:
                value = self._manual_value(descriptor)

            if value is None:
                if action.mode is ProvisioningMode.OPTIONAL:
                    logger.info(f"Skipping optional secret {descriptor.remote_key}")
                    report.skipped.append(descriptor.remote_key)
                else:
                    reason = (NO_VALUE_PROVIDED if self.input_provider is not None
                              else "manual value required but no input provider is available")
                    report.failures.append(Failure(target=descriptor.remote_key, reason=reason))
                continue

            result = self.store.upsert(descriptor.remote_key, value)
            if result.created:
                report.created.append(descriptor.remote_key)
            else:
                report.updated.append(descriptor.remote_key)

        logger.info(
            f"Created {len(report.created)}, updated {len(report.updated)}, "
            f"skipped {len(report.skipped)}, failed {len(report.failures)}"
        )
        return report

    def validate(
        self,
        descriptors: Sequence[SecretDescriptor],
        wait: bool = True,
        timeout: Optional[float] = None,
    ) -> ValidationSummary:
        if self.validator is None:
            raise ValueError("Validation requires a ConvergenceValidator")
        return self.validator.validate(descriptors, wait=wait, timeout=timeout)

    def sync(
        self,
        deployment: Optional[str] = None,
        dry_run: bool = False,
        timeout: Optional[float] = None,
    ) -> SyncReport:
        """
        Run the full pipeline.

        Validation covers every discovered descriptor, not only the ones
        created in this run, and is skipped entirely in dry-run mode.

        Raises:
            AuthenticationError, PermissionDeniedError, TransientError: On
                backend failures that abort the run
        """
        report = SyncReport(scan=self.discover(deployment), dry_run=dry_run)
        descriptors = report.scan.secrets
        if not descriptors:
            logger.warning("No secrets found with externalSecrets.enabled = true")
            report.validation = ValidationSummary()
            return report

        report.check = self.check(descriptors)
        report.generate = self.generate(report.check.missing, dry_run=dry_run)
        if dry_run or report.generate.cancelled:
            return report

        report.validation = self.validate(descriptors, wait=True, timeout=timeout)
        return report
