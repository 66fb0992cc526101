"""
CDKTF entrypoint for the Vault auto-unseal KMS.
"""

from __future__ import annotations

from pathlib import Path
import os
import sys

from constructs import Construct
from cdktf import App, TerraformOutput, TerraformStack

from cdktf_cdktf_provider_azuread.provider import AzureadProvider
from cdktf_cdktf_provider_azurerm.data_azurerm_client_config import (
    DataAzurermClientConfig,
)
from cdktf_cdktf_provider_azurerm.provider import AzurermProvider

from stacks.azure_stack import resource_tags, synth_config_json
from modules.identity.identity import provision_service_principal
from modules.keyvault.keyvault import provision_shared_resources, provision_unseal_key
from iac_types import KmsInfrastructureConfig
from utils.config_loader import load_tfvars_config
from utils.validation import missing_env, format_missing_env_message

STACK_NAME = os.getenv("STACK_NAME") or "vault-kms"


class VaultKmsStack(TerraformStack):
    """TerraformStack that wires the KMS resources based on typed config."""

    def __init__(
        self, scope: Construct, id: str, config: KmsInfrastructureConfig
    ) -> None:
        super().__init__(scope, id)

        if config.cloud_provider != "azure":
            raise ValueError(f"Unsupported cloud provider: {config.cloud_provider}")

        # Providers
        AzurermProvider(self, "azurerm", features=[{}])
        AzureadProvider(self, "azuread")
        client = DataAzurermClientConfig(self, "current")
        tags = resource_tags(config)

        # Key Vault + key
        kv_id, kv_name, key_deps = provision_shared_resources(
            scope=self, cfg=config, client=client, tags=tags
        )
        key = provision_unseal_key(
            scope=self, cfg=config, key_vault_id=kv_id, depends_on=key_deps, tags=tags
        )

        # Service principal Vault authenticates as
        app, password = provision_service_principal(scope=self, cfg=config, key=key)

        # Output contract read by the autounseal CLI
        TerraformOutput(self, "cloud_provider", value=config.cloud_provider)
        TerraformOutput(self, "deployment_domain", value=config.deployment_domain)
        TerraformOutput(self, "azure_tenant_id", value=client.tenant_id)
        TerraformOutput(self, "client_id", value=app.client_id)
        TerraformOutput(self, "client_secret", value=password.value, sensitive=True)
        TerraformOutput(self, "key_vault_name", value=kv_name)
        TerraformOutput(self, "key_name", value=key.name)


def main() -> None:
    project_root = Path(__file__).resolve().parent
    try:
        cfg = load_tfvars_config(repo_root=project_root)
    except (FileNotFoundError, KeyError, ValueError) as ex:
        print(f"Error: {ex}", file=sys.stderr)
        sys.exit(2)

    # Preflight: azurerm 4.x refuses to plan without an explicit subscription
    required_env = ["ARM_SUBSCRIPTION_ID"]
    missing = missing_env(env=os.environ, keys=required_env)
    if missing:
        msg = format_missing_env_message(missing)
        print(msg, file=sys.stderr)
        sys.exit(2)

    app = App()
    try:
        VaultKmsStack(app, STACK_NAME, cfg)
    except ValueError as ex:
        # Surface a concise, friendly message instead of a long traceback
        print(f"Error: {ex}", file=sys.stderr)
        sys.exit(1)

    # Surface a copy of the config used for traceability
    _cfg_json = synth_config_json(cfg)
    TerraformOutput(
        app.node.try_find_child(STACK_NAME), "config_json", value=str(_cfg_json)
    )

    try:
        app.synth()
    except Exception as ex:  # noqa: BLE001 - present actionable error
        print("Synthesis failed.", file=sys.stderr)
        print(str(ex), file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
