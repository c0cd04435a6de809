"""Values scanner: discovers externalSecrets declarations in Helm values files."""
import glob
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

import yaml

from .exceptions import DescriptorValidationError, ParseError
from .models import (
    DEFAULT_REFRESH_INTERVAL,
    DEFAULT_SECRET_STORE,
    GenerationSpec,
    ScanResults,
    SecretDescriptor,
)

logger = logging.getLogger(__name__)

DEFAULT_PATTERNS = (
    "values/deployments/*.yaml",
    "values/infrastructure/*.yaml",
)

# Top-level keys holding cross-cutting config rather than a chart
RESERVED_KEYS = frozenset({"global", "argocd"})

ENVIRONMENT_TOKENS = frozenset({"staging", "production", "development", "dev", "stg", "prod"})

INFRASTRUCTURE_SCOPE = "infrastructure"
SECRETS_KEY = "externalSecrets"


@dataclass(frozen=True)
class SecretEntry:
    remote_key: Any
    generator: Any = None
    optional: bool = False


@dataclass(frozen=True)
class SingleSecretBlock:
    """`externalSecrets` with one `remoteKey` (postgresql, external-dns)."""
    enabled: bool
    entry: SecretEntry
    secret_store: Optional[str] = None
    refresh_interval: Optional[str] = None

    @property
    def entries(self) -> List[SecretEntry]:
        return [self.entry]


@dataclass(frozen=True)
class ArraySecretBlock:
    """`externalSecrets` with a `secrets` list (minio, api, frontends)."""
    enabled: bool
    entries: List[Any]
    secret_store: Optional[str] = None
    refresh_interval: Optional[str] = None


SecretBlock = Union[SingleSecretBlock, ArraySecretBlock]


def _is_single_block(value: Any) -> bool:
    return (
        isinstance(value, dict)
        and isinstance(value.get("enabled"), bool)
        and isinstance(value.get("remoteKey"), str)
    )


def _is_array_block(value: Any) -> bool:
    return (
        isinstance(value, dict)
        and isinstance(value.get("enabled"), bool)
        and isinstance(value.get("secrets"), list)
        and len(value["secrets"]) > 0
    )


def parse_secret_block(value: Any) -> Optional[SecretBlock]:
    """
    Match an `externalSecrets` value against the known shapes.

    The single shape is tried before the array shape. Anything matching
    neither is not a secret declaration and yields None.
    """
    if _is_single_block(value):
        return SingleSecretBlock(
            enabled=value["enabled"],
            entry=SecretEntry(
                remote_key=value["remoteKey"],
                generator=value.get("generator"),
                optional=value.get("optional") is True,
            ),
            secret_store=value.get("secretStore"),
            refresh_interval=value.get("refreshInterval"),
        )

    if _is_array_block(value):
        return ArraySecretBlock(
            enabled=value["enabled"],
            entries=list(value["secrets"]),
            secret_store=value.get("secretStore"),
            refresh_interval=value.get("refreshInterval"),
        )

    return None


def parse_generator(raw: Any) -> Optional[GenerationSpec]:
    """Convert a values-file `generator` mapping into a GenerationSpec."""
    if not isinstance(raw, dict):
        return None

    length = raw.get("length")
    if length is not None and (isinstance(length, bool) or not isinstance(length, int)):
        length = None

    return GenerationSpec(
        enabled=raw.get("generate") is True,
        kind=str(raw.get("type", "")),
        length=length,
        description=raw.get("description"),
    )


def deployment_context(file_path: str) -> tuple:
    """
    Derive (deployment_scope, environment, is_infrastructure) from a values file path.

    "values/deployments/acme-staging.yaml" -> ("acme-staging", "staging", False)
    "values/infrastructure/external-dns.yaml" -> ("infrastructure", None, True)
    """
    path = Path(file_path)
    stem = path.stem
    environment = None

    parts = stem.split("-")
    if len(parts) > 1 and parts[-1] in ENVIRONMENT_TOKENS:
        environment = parts[-1]

    is_infrastructure = path.parent.name == INFRASTRUCTURE_SCOPE
    scope = INFRASTRUCTURE_SCOPE if is_infrastructure else stem
    return scope, environment, is_infrastructure


def _entry_from_raw(raw: Any) -> Optional[SecretEntry]:
    if isinstance(raw, SecretEntry):
        return raw
    if not isinstance(raw, dict):
        return None
    return SecretEntry(
        remote_key=raw.get("remoteKey"),
        generator=raw.get("generator"),
        optional=raw.get("optional") is True,
    )


class _DocumentScan:
    """Accumulates descriptors and validation errors for one values file."""

    def __init__(self, source_location: str):
        self.source_location = source_location
        self.deployment_scope, self.environment, self.is_infrastructure = deployment_context(source_location)
        self.secrets: List[SecretDescriptor] = []
        self.invalid: List[DescriptorValidationError] = []

    def extract_chart(self, chart_name: str, chart_config: Any) -> None:
        if not isinstance(chart_config, dict):
            return

        block = parse_secret_block(chart_config.get(SECRETS_KEY))
        if block is None or not block.enabled:
            return

        secret_store = block.secret_store or DEFAULT_SECRET_STORE
        refresh_interval = block.refresh_interval or DEFAULT_REFRESH_INTERVAL
        namespace = chart_config.get("namespace")
        if namespace is not None and not isinstance(namespace, str):
            namespace = None

        for index, raw_entry in enumerate(block.entries):
            entry = _entry_from_raw(raw_entry)
            if entry is None:
                self.invalid.append(DescriptorValidationError(
                    f"Chart '{chart_name}' in {self.source_location}: secrets[{index}] "
                    f"must be a mapping with a remoteKey",
                    source_location=self.source_location,
                    chart_name=chart_name,
                ))
                continue

            remote_key = entry.remote_key if isinstance(entry.remote_key, str) else ""
            descriptor = SecretDescriptor(
                source_location=self.source_location,
                deployment_scope=self.deployment_scope,
                chart_name=chart_name,
                environment=self.environment,
                remote_key=remote_key,
                generation_spec=parse_generator(entry.generator),
                secret_store_ref=secret_store,
                refresh_interval=refresh_interval,
                namespace_hint=namespace,
                optional=entry.optional,
            )

            try:
                descriptor.validate()
            except DescriptorValidationError as e:
                logger.warning(str(e))
                self.invalid.append(e)
                continue

            self.secrets.append(descriptor)


def _load_document(file_path: str) -> Dict[str, Any]:
    try:
        with open(file_path, 'r', encoding="utf-8") as f:
            values = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ParseError(file_path, f"invalid YAML: {e}")
    except OSError as e:
        raise ParseError(file_path, str(e))

    if not isinstance(values, dict):
        raise ParseError(file_path, "document is not a mapping")
    return values


def parse_values_file(file_path: str) -> _DocumentScan:
    """
    Extract every declared secret from one values file.

    Args:
        file_path: Path to the values file

    Returns:
        Scan state holding descriptors and per-descriptor validation errors

    Raises:
        ParseError: If the file cannot be read or is not a YAML mapping
    """
    values = _load_document(file_path)
    document = _DocumentScan(file_path)

    # Infrastructure files hold a single chart's values at the root
    if document.is_infrastructure and SECRETS_KEY in values:
        document.extract_chart(Path(file_path).stem, values)

    for chart_name, chart_config in values.items():
        if chart_name in RESERVED_KEYS:
            continue
        document.extract_chart(str(chart_name), chart_config)

    return document


def find_values_files(patterns: Sequence[str] = DEFAULT_PATTERNS, root: Optional[str] = None) -> List[str]:
    """Expand glob patterns relative to root; sorted within each pattern, patterns in order."""
    base = Path(root) if root else Path.cwd()
    files: List[str] = []
    seen = set()
    for pattern in patterns:
        full_pattern = pattern if Path(pattern).is_absolute() else str(base / pattern)
        for match in sorted(glob.glob(full_pattern)):
            resolved = str(Path(match).resolve())
            if resolved not in seen:
                seen.add(resolved)
                files.append(resolved)
    return files


def _matches_deployment(file_path: str, deployment: str) -> bool:
    _, _, is_infrastructure = deployment_context(file_path)
    if deployment == INFRASTRUCTURE_SCOPE:
        return is_infrastructure
    return Path(file_path).stem == deployment


def scan(
    patterns: Sequence[str] = DEFAULT_PATTERNS,
    deployment: Optional[str] = None,
    root: Optional[str] = None,
) -> ScanResults:
    """
    Scan values files for externalSecrets declarations.

    Args:
        patterns: Glob patterns of values files
        deployment: Only scan files belonging to this deployment
        root: Directory patterns are relative to (defaults to cwd)

    Returns:
        ScanResults with descriptors in file order, then declaration order

    Behavior:
        - Unparseable files are logged and skipped
        - Malformed declarations are collected in ScanResults.invalid
    """
    files = find_values_files(patterns, root)
    if deployment:
        files = [f for f in files if _matches_deployment(f, deployment)]

    results = ScanResults()
    for file_path in files:
        _, _, is_infrastructure = deployment_context(file_path)
        if is_infrastructure:
            results.infrastructure_files.append(file_path)
        else:
            results.deployment_files.append(file_path)

        try:
            document = parse_values_file(file_path)
        except ParseError as e:
            logger.warning(f"Skipping values file: {e}")
            continue

        results.secrets.extend(document.secrets)
        results.invalid.extend(document.invalid)

    logger.info(
        f"Discovered {results.total_secrets} secrets in {len(files)} values files "
        f"({results.secrets_with_generator} with generator)"
    )
    return results


def group_by_deployment(secrets: Iterable[SecretDescriptor]) -> Dict[str, List[SecretDescriptor]]:
    grouped: Dict[str, List[SecretDescriptor]] = {}
    for secret in secrets:
        grouped.setdefault(secret.deployment_scope, []).append(secret)
    return grouped


def group_by_chart(secrets: Iterable[SecretDescriptor]) -> Dict[str, List[SecretDescriptor]]:
    grouped: Dict[str, List[SecretDescriptor]] = {}
    for secret in secrets:
        grouped.setdefault(secret.chart_name, []).append(secret)
    return grouped


def filter_generatable(secrets: Iterable[SecretDescriptor]) -> List[SecretDescriptor]:
    return [s for s in secrets if s.generation_spec is not None and s.generation_spec.enabled]


def filter_by_environment(secrets: Iterable[SecretDescriptor], environment: str) -> List[SecretDescriptor]:
    return [s for s in secrets if s.environment == environment]


def unique_remote_keys(secrets: Iterable[SecretDescriptor]) -> List[str]:
    """Remote keys in first-seen order, without duplicates."""
    seen = set()
    keys: List[str] = []
    for secret in secrets:
        if secret.remote_key not in seen:
            seen.add(secret.remote_key)
            keys.append(secret.remote_key)
    return keys
