"""
Runtime configuration.

Settings are built once from defaults, an optional ``.env`` file and the
process environment (which wins over ``.env``), then passed explicitly to
every command. Provisioning outputs are read from the CDKTF outputs file
into ``KmsOutputs``.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Dict, List, Mapping, Optional

OUTPUTS_FILE = "kms-outputs.json"
TFVARS_FILE = "terraform.tfvars"
ROOT_TOKEN_FILE = "root-token.txt"
RECOVERY_KEYS_FILE = "recovery-keys.txt"
VAULT_CONFIG_FILE = "vault.hcl"

REPO_ROOT = Path(__file__).resolve().parents[1]


def _strip_quotes(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    return value


def parse_env_file(content: str) -> Dict[str, str]:
    """Minimal .env parser: KEY=value lines, '#' comments, optional quotes."""
    values: Dict[str, str] = {}
    for raw in content.splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        if line.startswith("export "):
            line = line[len("export "):]
        key, val = line.split("=", 1)
        val = val.strip()
        if " #" in val and not val.startswith(("'", '"')):
            val = val.split(" #", 1)[0].strip()
        values[key.strip()] = _strip_quotes(val)
    return values


def _to_bool(value: str) -> bool:
    if value.lower() in ("true", "1", "yes"):
        return True
    if value.lower() in ("false", "0", "no"):
        return False
    raise ValueError(f"Invalid boolean value: {value}")


def _to_int(value: str) -> int:
    try:
        return int(value)
    except Exception as ex:  # noqa: BLE001 - rethrow with context
        raise ValueError(f"Invalid int value: {value}") from ex


def _to_float(value: str) -> float:
    try:
        return float(value)
    except Exception as ex:  # noqa: BLE001 - rethrow with context
        raise ValueError(f"Invalid number value: {value}") from ex


@dataclass(frozen=True)
class Settings:
    work_dir: Path
    infra_dir: Path = REPO_ROOT / "infra"
    stack_name: str = "vault-kms"
    deployment_domain: str = "dev-gpu"
    environment: str = "development"
    location: str = "uksouth"
    resource_group_name: str = "arbi-vault-shared-rg"
    key_vault_name: str = "arbi-vault-shared-kv"
    vault_addr: str = "http://localhost:8210"
    container_name: str = "vault-autounseal"
    compose_service: str = "vault"
    compose_file: Optional[Path] = None
    volume_filter: str = "vault-data"
    recovery_shares: int = 5
    recovery_threshold: int = 3
    startup_attempts: int = 30
    verify_attempts: int = 15
    poll_interval: float = 2.0
    poll_deadline: Optional[float] = None
    http_timeout: float = 5.0
    destroy_timeout: float = 300.0

    @property
    def outputs_path(self) -> Path:
        return self.work_dir / OUTPUTS_FILE

    @property
    def tfvars_path(self) -> Path:
        return self.infra_dir / TFVARS_FILE

    @property
    def vault_config_path(self) -> Path:
        return self.work_dir / VAULT_CONFIG_FILE

    @property
    def root_token_path(self) -> Path:
        return self.work_dir / ROOT_TOKEN_FILE

    @property
    def recovery_keys_path(self) -> Path:
        return self.work_dir / RECOVERY_KEYS_FILE


# environment variable -> (field, converter)
_ENV_FIELDS = {
    "INFRA_DIR": ("infra_dir", Path),
    "STACK_NAME": ("stack_name", str),
    "DEPLOYMENT_DOMAIN": ("deployment_domain", str),
    "DEPLOYMENT_ENVIRONMENT": ("environment", str),
    "AZURE_LOCATION": ("location", str),
    "RESOURCE_GROUP_NAME": ("resource_group_name", str),
    "KEY_VAULT_NAME": ("key_vault_name", str),
    "VAULT_ADDR": ("vault_addr", str),
    "VAULT_CONTAINER_NAME": ("container_name", str),
    "VAULT_COMPOSE_SERVICE": ("compose_service", str),
    "VAULT_COMPOSE_FILE": ("compose_file", Path),
    "VAULT_VOLUME_FILTER": ("volume_filter", str),
    "VAULT_RECOVERY_SHARES": ("recovery_shares", _to_int),
    "VAULT_RECOVERY_THRESHOLD": ("recovery_threshold", _to_int),
    "VAULT_STARTUP_ATTEMPTS": ("startup_attempts", _to_int),
    "VAULT_VERIFY_ATTEMPTS": ("verify_attempts", _to_int),
    "VAULT_POLL_INTERVAL": ("poll_interval", _to_float),
    "VAULT_POLL_DEADLINE": ("poll_deadline", _to_float),
    "HTTP_TIMEOUT": ("http_timeout", _to_float),
    "DESTROY_TIMEOUT": ("destroy_timeout", _to_float),
}


def load_settings(
    work_dir: Optional[Path] = None,
    env_file: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    work = (work_dir or Path.cwd()).resolve()
    if env_file is not None and not env_file.exists():
        raise FileNotFoundError(f"env file not found: {env_file}")
    env_path = env_file if env_file is not None else work / ".env"
    merged: Dict[str, str] = {}
    if env_path.exists():
        merged.update(parse_env_file(env_path.read_text(encoding="utf-8")))
    merged.update(environ if environ is not None else os.environ)

    overrides = {}
    for key, (name, convert) in _ENV_FIELDS.items():
        raw = merged.get(key)
        if raw is None or not raw.strip():
            continue
        overrides[name] = convert(raw.strip())
    if "infra_dir" not in overrides and (work / "infra").is_dir():
        # CDKTF app checked out next to the generated files
        overrides["infra_dir"] = work / "infra"
    settings = Settings(work_dir=work, **overrides)
    if settings.recovery_threshold > settings.recovery_shares:
        raise ValueError(
            f"recovery threshold ({settings.recovery_threshold}) exceeds shares ({settings.recovery_shares})"
        )
    return settings


@dataclass(frozen=True)
class KmsOutputs:
    cloud_provider: str = ""
    tenant_id: str = ""
    client_id: str = ""
    client_secret: str = ""
    key_vault_name: str = ""
    key_name: str = ""
    deployment_domain: str = ""

    # provisioning output name -> field
    OUTPUT_NAMES = {
        "cloud_provider": "cloud_provider",
        "azure_tenant_id": "tenant_id",
        "client_id": "client_id",
        "client_secret": "client_secret",
        "key_vault_name": "key_vault_name",
        "key_name": "key_name",
        "deployment_domain": "deployment_domain",
    }

    @classmethod
    def from_outputs(cls, outputs: Mapping[str, object]) -> "KmsOutputs":
        values = {}
        for out_name, attr in cls.OUTPUT_NAMES.items():
            raw = outputs.get(out_name)
            values[attr] = "" if raw is None else str(raw)
        return cls(**values)

    def missing(self, required: Optional[List[str]] = None) -> List[str]:
        names = required or [f.name for f in fields(self)]
        return [n for n in names if not getattr(self, n)]


def read_outputs_file(path: Path, stack_name: Optional[str] = None) -> Dict[str, object]:
    """Flatten the CDKTF outputs file ({stack: {name: value}}) for one stack."""
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"Unexpected outputs file format: {path}")
    if stack_name and isinstance(data.get(stack_name), dict):
        return dict(data[stack_name])
    stacks = [v for v in data.values() if isinstance(v, dict)]
    if len(stacks) == 1:
        return dict(stacks[0])
    return dict(data)


def load_outputs(settings: Settings) -> Optional[KmsOutputs]:
    if not settings.outputs_path.exists():
        return None
    return KmsOutputs.from_outputs(
        read_outputs_file(settings.outputs_path, settings.stack_name)
    )
