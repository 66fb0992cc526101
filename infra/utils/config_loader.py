"""
Config loader for tfvars -> typed config used by the CDKTF stack.

Functional, pure helpers that parse a minimal subset of .tfvars syntax
for the variables used by this repo. No external dependencies.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Dict

from iac_types import (
    KmsInfrastructureConfig,
    ServicePrincipalConfig,
    SharedResourcesConfig,
    UnsealKeyConfig,
)

# Key Vault key names: alphanumerics and dashes, at most 127 characters
_KEY_NAME_RE = re.compile(r"^[0-9A-Za-z-]{1,127}$")
# Key Vault names: 3-24 chars, start with a letter, no consecutive dashes
_VAULT_NAME_RE = re.compile(r"^[A-Za-z](?!.*--)[0-9A-Za-z-]{1,22}[0-9A-Za-z]$")


def _strip_quotes(value: str) -> str:
    if value.startswith('"') and value.endswith('"'):
        return value[1:-1]
    if value.startswith("'") and value.endswith("'"):
        return value[1:-1]
    return value


def _parse_tfvars(content: str) -> Dict[str, str]:
    """Very small tfvars parser for simple key = value pairs.

    Supports strings, integers, booleans on single lines.
    Lines starting with '#' are ignored.
    """
    vars_map: Dict[str, str] = {}
    for raw in content.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, val = line.split("=", 1)
        key = key.strip()
        val = val.strip()
        # Remove potential trailing comments
        if " #" in val:
            val = val.split(" #", 1)[0].strip()
        vars_map[key] = val
    return vars_map


def _to_bool(value: str) -> bool:
    if value.lower() in ("true", "1"):
        return True
    if value.lower() in ("false", "0"):
        return False
    raise ValueError(f"Invalid boolean value: {value}")


def _to_int(value: str) -> int:
    try:
        return int(value)
    except Exception as ex:  # noqa: BLE001 - rethrow with context
        raise ValueError(f"Invalid int value: {value}") from ex


def _required(vars_map: Dict[str, str], key: str) -> str:
    if key not in vars_map:
        raise KeyError(f"Missing required var: {key}")
    return vars_map[key]


def _optional(vars_map: Dict[str, str], key: str, default: str) -> str:
    return _strip_quotes(vars_map[key]) if key in vars_map else default


def _build_names(domain: str) -> Dict[str, str]:
    return {
        "key": f"vault-unseal-{domain}",
        "sp": f"vault-autounseal-{domain}",
        "password": f"vault-autounseal-{domain}-secret",
    }


def _build_shared_config(vars_map: Dict[str, str]) -> SharedResourcesConfig:
    kv_name = _strip_quotes(_required(vars_map, "key_vault_name"))
    if not _VAULT_NAME_RE.match(kv_name):
        raise ValueError(f"Invalid key vault name: {kv_name}")
    return SharedResourcesConfig(
        resource_group_name=_strip_quotes(_required(vars_map, "resource_group_name")),
        key_vault_name=kv_name,
        use_existing=_to_bool(_required(vars_map, "use_existing_shared_resources")),
        sku=_optional(vars_map, "key_vault_sku", "standard"),
    )


def _build_key_config(vars_map: Dict[str, str], default_name: str) -> UnsealKeyConfig:
    name = _optional(vars_map, "key_name", default_name)
    if not _KEY_NAME_RE.match(name):
        raise ValueError(f"Invalid key name: {name}")
    return UnsealKeyConfig(
        name=name,
        key_type=_optional(vars_map, "key_type", "RSA"),
        key_size=_to_int(_optional(vars_map, "key_size", "2048")),
        # Vault's azurekeyvault seal only wraps and unwraps
        key_opts=["wrapKey", "unwrapKey"],
    )


def load_tfvars_config(*, repo_root: Path) -> KmsInfrastructureConfig:
    # Use default if env var is missing or empty
    tfvars_file_env = os.getenv("TFVARS_FILE")
    tfvars_file = (
        tfvars_file_env
        if (tfvars_file_env and tfvars_file_env.strip())
        else "terraform.tfvars"
    )
    vars_path = (repo_root / tfvars_file).resolve()
    if not vars_path.exists():
        raise FileNotFoundError(f"tfvars file not found: {vars_path}")

    content = vars_path.read_text(encoding="utf-8")
    return config_from_tfvars(content)


def config_from_tfvars(content: str) -> KmsInfrastructureConfig:
    vars_map = _parse_tfvars(content)

    domain = _strip_quotes(_required(vars_map, "deployment_domain"))
    names = _build_names(domain)

    return KmsInfrastructureConfig(
        deployment_domain=domain,
        environment=_strip_quotes(_required(vars_map, "environment")),
        cloud_provider=_strip_quotes(_required(vars_map, "cloud_provider")),
        location=_strip_quotes(_required(vars_map, "location")),
        shared=_build_shared_config(vars_map),
        unseal_key=_build_key_config(vars_map, names["key"]),
        service_principal=ServicePrincipalConfig(
            display_name=names["sp"],
            role_definition_name="Key Vault Crypto User",
            password_display_name=names["password"],
        ),
    )
