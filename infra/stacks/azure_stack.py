"""
Azure stack config helpers.

This module adapts tfvars (loaded elsewhere) into the strongly-typed
KmsInfrastructureConfig used by the CDKTF stack.
"""

from dataclasses import asdict
from typing import Any, Dict

from iac_types import KmsInfrastructureConfig


def synth_config_json(config: KmsInfrastructureConfig) -> Dict[str, Any]:
    """Convert dataclasses to plain dict for diagnostics or outputs."""
    return asdict(config)


def resource_tags(config: KmsInfrastructureConfig) -> Dict[str, str]:
    return {
        "deployment_domain": config.deployment_domain,
        "environment": config.environment,
        "managed_by": "cdktf",
        "purpose": "vault-auto-unseal",
    }
