"""
Identity module.

Service principal Vault authenticates as, with a client secret and the
Key Vault crypto role scoped to the unseal key only.
"""

from __future__ import annotations

from typing import Tuple

from constructs import Construct

from cdktf_cdktf_provider_azuread.application import Application
from cdktf_cdktf_provider_azuread.application_password import ApplicationPassword
from cdktf_cdktf_provider_azuread.service_principal import ServicePrincipal
from cdktf_cdktf_provider_azurerm.key_vault_key import KeyVaultKey
from cdktf_cdktf_provider_azurerm.role_assignment import RoleAssignment

from iac_types import KmsInfrastructureConfig


def provision_service_principal(
    *, scope: Construct, cfg: KmsInfrastructureConfig, key: KeyVaultKey
) -> Tuple[Application, ApplicationPassword]:
    """Provision app + SP + secret; return (application, password)."""
    sp_cfg = cfg.service_principal
    app = Application(scope, "vaultApplication", display_name=sp_cfg.display_name)
    sp = ServicePrincipal(scope, "vaultServicePrincipal", client_id=app.client_id)
    password = ApplicationPassword(
        scope,
        "vaultApplicationPassword",
        application_id=app.id,
        display_name=sp_cfg.password_display_name,
    )
    RoleAssignment(
        scope,
        "vaultKeyCryptoUser",
        scope=key.resource_versionless_id,
        role_definition_name=sp_cfg.role_definition_name,
        principal_id=sp.object_id,
    )
    return app, password
