"""
Key Vault module.

Creates (or references) the shared resource group and RBAC-enabled Key
Vault, then the RSA key Vault's azurekeyvault seal wraps its root key with.
"""

from __future__ import annotations

from typing import Dict, Tuple

from constructs import Construct

from cdktf_cdktf_provider_azurerm.data_azurerm_client_config import (
    DataAzurermClientConfig,
)
from cdktf_cdktf_provider_azurerm.data_azurerm_key_vault import DataAzurermKeyVault
from cdktf_cdktf_provider_azurerm.data_azurerm_resource_group import (
    DataAzurermResourceGroup,
)
from cdktf_cdktf_provider_azurerm.key_vault import KeyVault
from cdktf_cdktf_provider_azurerm.key_vault_key import KeyVaultKey
from cdktf_cdktf_provider_azurerm.resource_group import ResourceGroup
from cdktf_cdktf_provider_azurerm.role_assignment import RoleAssignment

from iac_types import KmsInfrastructureConfig


def provision_shared_resources(
    *,
    scope: Construct,
    cfg: KmsInfrastructureConfig,
    client: DataAzurermClientConfig,
    tags: Dict[str, str],
) -> Tuple[str, str, list]:
    """Return (key_vault_id, key_vault_name, depends_on for key creation)."""
    shared = cfg.shared
    if shared.use_existing:
        rg = DataAzurermResourceGroup(scope, "sharedResourceGroup", name=shared.resource_group_name)
        kv = DataAzurermKeyVault(
            scope,
            "sharedKeyVault",
            name=shared.key_vault_name,
            resource_group_name=rg.name,
        )
        return kv.id, kv.name, []

    rg = ResourceGroup(
        scope,
        "sharedResourceGroup",
        name=shared.resource_group_name,
        location=cfg.location,
        tags=tags,
    )
    kv = KeyVault(
        scope,
        "sharedKeyVault",
        name=shared.key_vault_name,
        location=cfg.location,
        resource_group_name=rg.name,
        tenant_id=client.tenant_id,
        sku_name=shared.sku,
        soft_delete_retention_days=7,
        purge_protection_enabled=False,
        rbac_authorization_enabled=True,
        public_network_access_enabled=True,
        tags=tags,
    )
    # The deploying identity needs data-plane rights to create keys
    admin = RoleAssignment(
        scope,
        "deployerKeyVaultAdmin",
        scope=kv.id,
        role_definition_name="Key Vault Administrator",
        principal_id=client.object_id,
    )
    return kv.id, kv.name, [admin]


def provision_unseal_key(
    *,
    scope: Construct,
    cfg: KmsInfrastructureConfig,
    key_vault_id: str,
    depends_on: list,
    tags: Dict[str, str],
) -> KeyVaultKey:
    """Provision the wrap/unwrap key and return it."""
    key = cfg.unseal_key
    return KeyVaultKey(
        scope,
        "unsealKey",
        name=key.name,
        key_vault_id=key_vault_id,
        key_type=key.key_type,
        key_size=key.key_size,
        key_opts=list(key.key_opts),
        tags=tags,
        depends_on=depends_on or None,
    )
