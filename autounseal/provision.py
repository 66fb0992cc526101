"""
KMS provisioning through the CDKTF app in ``infra/``.

The app reads ``terraform.tfvars`` from its project directory; this module
writes that file, drives ``cdktf`` and cleans up local state afterwards.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Dict, List, Optional

from .config import KmsOutputs, Settings, load_outputs
from .utils import CmdError, cdktf, remove_path

STATE_GLOBS = [
    "terraform.*.tfstate",
    "terraform.*.tfstate.backup",
    "terraform.tfstate",
    "terraform.tfstate.*.backup",
    ".terraform.tfstate.lock.info",
]


def cdktf_env(settings: Settings) -> Dict[str, str]:
    """Child environment for the CDKTF app; it names its stack from STACK_NAME."""
    return {**os.environ, "STACK_NAME": settings.stack_name}


def render_tfvars(
    settings: Settings,
    use_existing_shared_resources: bool,
    cloud_provider: str = "azure",
    deployment_domain: Optional[str] = None,
) -> str:
    return "\n".join(
        [
            "# Deployment Configuration",
            f'deployment_domain = "{deployment_domain or settings.deployment_domain}"',
            f'environment = "{settings.environment}"',
            "",
            "# Azure Configuration",
            f'cloud_provider = "{cloud_provider}"',
            f'location = "{settings.location}"',
            "",
            "# Resource Configuration",
            f"use_existing_shared_resources = {str(use_existing_shared_resources).lower()}",
            f'resource_group_name = "{settings.resource_group_name}"',
            f'key_vault_name = "{settings.key_vault_name}"',
            "",
        ]
    )


def write_tfvars(settings: Settings, content: str) -> Path:
    settings.tfvars_path.parent.mkdir(parents=True, exist_ok=True)
    settings.tfvars_path.write_text(content, encoding="utf-8")
    return settings.tfvars_path


def set_use_existing_shared(path: Path, value: bool) -> None:
    content = path.read_text(encoding="utf-8")
    line = f"use_existing_shared_resources = {str(value).lower()}"
    pattern = re.compile(r"^use_existing_shared_resources\s*=.*$", re.MULTILINE)
    if pattern.search(content):
        content = pattern.sub(line, content)
    else:
        content = content.rstrip("\n") + "\n" + line + "\n"
    path.write_text(content, encoding="utf-8")


def deploy(settings: Settings) -> KmsOutputs:
    project = settings.infra_dir
    if not project.exists():
        raise CmdError(
            f"CDKTF project not found: {project}. Run from the repository root or set INFRA_DIR."
        )
    print("Synthesizing CDKTF...")
    env = cdktf_env(settings)
    cdktf(project, ["get"], env=env)  # ensure providers
    cdktf(project, ["synth"], env=env)  # generate JSON tf
    print("Deploying CDKTF...")
    cdktf(
        project,
        [
            "deploy",
            settings.stack_name,
            "--auto-approve",
            "--outputs-file",
            str(settings.outputs_path),
            "--outputs-file-include-sensitive-outputs",
        ],
        env=env,
    )
    outputs = load_outputs(settings)
    if outputs is None:
        raise CmdError(f"cdktf deploy did not write {settings.outputs_path}")
    return outputs


def destroy(settings: Settings) -> None:
    project = settings.infra_dir
    if not project.exists():
        raise CmdError(
            f"CDKTF project not found: {project}. Run from the repository root or set INFRA_DIR."
        )
    cdktf(
        project,
        ["destroy", settings.stack_name, "--auto-approve"],
        timeout=settings.destroy_timeout,
        env=cdktf_env(settings),
    )


def cleanup_local_state(settings: Settings) -> List[Path]:
    removed: List[Path] = []
    for pattern in STATE_GLOBS:
        for p in sorted(settings.infra_dir.glob(pattern)):
            if remove_path(p):
                removed.append(p)
    for p in (
        settings.tfvars_path,
        settings.outputs_path,
        settings.infra_dir / "cdktf.out",
        settings.infra_dir / ".terraform",
    ):
        if remove_path(p):
            removed.append(p)
    return removed
