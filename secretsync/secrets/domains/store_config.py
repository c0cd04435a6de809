"""ClusterSecretStore configuration declared in the infrastructure values file."""
import logging
from dataclasses import dataclass
from typing import Optional

import yaml

logger = logging.getLogger(__name__)

DEFAULT_STORE_VALUES = "values/infrastructure/main.yaml"


@dataclass(frozen=True)
class StoreConfig:
    name: str
    provider: str
    project_id: Optional[str] = None
    region: Optional[str] = None
    account_id: Optional[str] = None
    tenant_id: Optional[str] = None


def read_store_config(path: str = DEFAULT_STORE_VALUES) -> Optional[StoreConfig]:
    """
    Read the primary ClusterSecretStore from `externalSecrets.stores[0]`.

    Returns:
        StoreConfig, or None when the file, the stores list, or the store's
        name/provider are missing
    """
    try:
        with open(path, 'r', encoding="utf-8") as f:
            values = yaml.safe_load(f)
    except FileNotFoundError:
        return None
    except (OSError, yaml.YAMLError) as e:
        logger.warning(f"Failed to read store config from {path}: {e}")
        return None

    if not isinstance(values, dict):
        return None
    external_secrets = values.get("externalSecrets")
    if not isinstance(external_secrets, dict):
        return None
    stores = external_secrets.get("stores")
    if not isinstance(stores, list) or not stores or not isinstance(stores[0], dict):
        return None

    store = stores[0]
    if not store.get("name") or not store.get("provider"):
        return None

    provider = store["provider"]
    settings = store.get(provider) if isinstance(store.get(provider), dict) else {}

    return StoreConfig(
        name=store["name"],
        provider=provider,
        project_id=settings.get("projectId") if provider == "gcp" else None,
        region=settings.get("region") if provider in ("aws", "gcp") else None,
        account_id=settings.get("accountId") if provider == "aws" else None,
        tenant_id=settings.get("tenantId") if provider == "azure" else None,
    )


def project_id_from_values(path: str = DEFAULT_STORE_VALUES) -> Optional[str]:
    """GCP project of the primary store, ignoring unrendered template values."""
    config = read_store_config(path)
    if config is None or not isinstance(config.project_id, str):
        return None
    if not config.project_id or "{{" in config.project_id:
        return None
    return config.project_id
