"""
Preflight validation helpers.

Pure, minimal functions that check the local toolchain and provisioning
outputs and format actionable messages for users.
"""

from __future__ import annotations

import shutil
from typing import Callable, Iterable, List, Optional

from .config import KmsOutputs

INSTALL_HINTS = {
    "az": "https://learn.microsoft.com/cli/azure/install-azure-cli",
    "cdktf": "npm install --global cdktf-cli",
    "terraform": "https://developer.hashicorp.com/terraform/install",
    "docker": "https://docs.docker.com/engine/install/",
}

SUPPORTED_PROVIDERS = ("azure",)
PLANNED_PROVIDERS = ("aws", "gcp")


def missing_tools(
    tools: Iterable[str], which: Callable[[str], Optional[str]] = shutil.which
) -> List[str]:
    """Return the tools that are not on PATH."""
    return [t for t in tools if not which(t)]


def format_missing_tools_message(missing: List[str]) -> str:
    if not missing:
        return ""
    lines: List[str] = ["Preflight check failed: required tools are not installed", ""]
    for t in missing:
        hint = INSTALL_HINTS.get(t)
        lines.append(f"  - {t}" + (f" ({hint})" if hint else ""))
    return "\n".join(lines)


def format_missing_outputs_message(outputs: KmsOutputs, required: Optional[List[str]] = None) -> str:
    missing = outputs.missing(required)
    if not missing:
        return ""
    lines = ["Failed to extract required outputs from the KMS deployment:", ""]
    lines.extend(f"  - {m}" for m in missing)
    lines.append("")
    lines.append("Re-run: autounseal create-kms")
    return "\n".join(lines)


def provider_error(provider: str) -> str:
    """Empty when the provider is supported, otherwise the reason it is not."""
    if provider in SUPPORTED_PROVIDERS:
        return ""
    if not provider or provider == "unknown":
        return "Could not detect cloud provider from the KMS outputs"
    if provider in PLANNED_PROVIDERS:
        return f"{provider.upper()} provider not yet implemented"
    return f"Unsupported provider: {provider}"
