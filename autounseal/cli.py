from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import List, Optional

from .config import KmsOutputs, Settings, load_outputs, load_settings
from .convergence import ConvergenceResult, TransientUnreachable, poll, print_progress
from .kms import KeyVaultKeyClient, azure_logged_in, roundtrip_test_key, shared_resources_exist
from .lifecycle import (
    ComposeProject,
    DeploymentStateComparator,
    compose_available,
    container_exists,
    container_is_running,
    container_started_at,
    docker_running,
    exited_container_ids,
    list_volumes,
    remove_container,
    running_container_id,
)
from .provision import (
    cleanup_local_state,
    deploy,
    destroy,
    render_tfvars,
    set_use_existing_shared,
    write_tfvars,
)
from .utils import CmdError, banner, failure, info, remove_path, success, warning
from .validation import (
    format_missing_outputs_message,
    format_missing_tools_message,
    missing_tools,
    provider_error,
)
from .vault import (
    VaultClient,
    is_reachable,
    is_unsealed,
    make_fatal_check,
    render_vault_config,
    save_init_response,
    status_view,
    verify_operations,
)

SEAL_OUTPUTS = ["tenant_id", "client_id", "client_secret", "key_vault_name", "key_name"]

VAULT_GENERATED_FILES = [
    "vault.hcl",
    "recovery-keys.txt",
    "root-token.txt",
    "vault-temp.hcl",
    "docker-compose-temp.yml",
]


def _settings(args: argparse.Namespace) -> Settings:
    work_dir = Path(args.work_dir) if args.work_dir else None
    env_file = Path(args.env_file) if args.env_file else None
    return load_settings(work_dir=work_dir, env_file=env_file)


def _compose(settings: Settings) -> ComposeProject:
    return ComposeProject(settings.work_dir, settings.compose_file)


def _require_outputs(settings: Settings) -> KmsOutputs:
    outputs = load_outputs(settings)
    if outputs is None:
        raise CmdError(f"No KMS outputs found at {settings.outputs_path}. Run 'create-kms' first.")
    return outputs


def _confirm(prompt: str) -> bool:
    try:
        reply = input(f"{prompt} (y/N): ")
    except EOFError:
        return False
    return reply.strip().lower() in ("y", "yes")


def _print_json(data: dict) -> None:
    print(json.dumps(data, indent=2))


def _wait(
    settings: Settings,
    client: VaultClient,
    predicate,
    attempts: int,
    what: str,
    expect_initialized: bool = True,
) -> ConvergenceResult:
    result = poll(
        client.seal_status,
        predicate,
        max_attempts=attempts,
        interval=settings.poll_interval,
        fatal_check=make_fatal_check(expect_initialized=expect_initialized),
        deadline=settings.poll_deadline,
        progress=print_progress,
    )
    if not result.ok:
        print(_compose(settings).logs(settings.compose_service))
    return result.raise_for_status(what)


def create_kms(args: argparse.Namespace) -> None:
    settings = _settings(args)
    info(f"Setting up KMS infrastructure for deployment domain: {settings.deployment_domain}")

    missing = missing_tools(["az", "cdktf"])
    if missing:
        raise CmdError(format_missing_tools_message(missing))
    if not azure_logged_in():
        raise CmdError("Not logged into Azure CLI. Please run 'az login' first.")

    info("Checking for existing shared resources...")
    use_existing = shared_resources_exist(settings)
    if use_existing:
        success("Found existing shared resources:")
        success(f"  Resource Group: {settings.resource_group_name}")
        success(f"  Key Vault: {settings.key_vault_name}")
    else:
        info("No existing shared resources found, will create new ones")

    info(f"Generating {settings.tfvars_path.name}...")
    write_tfvars(settings, render_tfvars(settings, use_existing_shared_resources=use_existing))

    outputs = deploy(settings)
    message = format_missing_outputs_message(outputs, SEAL_OUTPUTS)
    if message:
        raise CmdError(message)
    success("CDKTF deploy completed")

    banner("KMS SETUP COMPLETE!")
    print("Azure KMS Configuration:")
    print(f"  Key Vault: {outputs.key_vault_name}")
    print(f"  Key Name: {outputs.key_name}")
    print(f"  Deployment Domain: {outputs.deployment_domain or settings.deployment_domain}")
    print(f"  Outputs: {settings.outputs_path}")
    print("")
    print("Next steps:")
    print("  1. Run 'autounseal test-kms' to test the KMS setup")
    print("  2. Run 'autounseal create-vault' to set up Vault with auto-unseal")


def test_kms(args: argparse.Namespace) -> None:
    settings = _settings(args)
    info("Testing Azure KMS setup...")
    outputs = _require_outputs(settings)
    message = format_missing_outputs_message(outputs, SEAL_OUTPUTS)
    if message:
        raise CmdError(message)
    success("Extracted credentials successfully")
    print(f"  Key Vault: {outputs.key_vault_name}")
    print(f"  Key Name: {outputs.key_name}")

    client = KeyVaultKeyClient(outputs, timeout=max(settings.http_timeout, 10.0))
    info("Testing service principal authentication...")
    client.authenticate()
    success("Service principal authentication successful")

    info("Testing key wrap/unwrap operations...")
    roundtrip_test_key(client)
    success("Key unwrap operation successful - key matches original")

    banner("KMS TEST PASSED!")
    print("Your Azure KMS setup is ready for Vault auto-unseal!")


def create_vault(args: argparse.Namespace) -> None:
    settings = _settings(args)
    info("Setting up HashiCorp Vault with KMS auto-unseal...")
    outputs = _require_outputs(settings)
    if not docker_running():
        raise CmdError("Docker is not running. Please start Docker first.")
    if not compose_available():
        raise CmdError("docker compose is not available.")

    problem = provider_error(outputs.cloud_provider)
    if problem:
        raise CmdError(problem)
    info(f"Detected provider: {outputs.cloud_provider}")
    message = format_missing_outputs_message(outputs, SEAL_OUTPUTS)
    if message:
        raise CmdError(message)

    info("Creating Vault configuration...")
    settings.vault_config_path.write_text(render_vault_config(outputs), encoding="utf-8")
    success(f"Vault configuration written to {settings.vault_config_path.name}")

    compose = _compose(settings)
    if container_is_running(settings.container_name):
        warning("Vault container is already running")
        info("Stopping existing container...")
        compose.stop()

    info("Starting Vault container with auto-unseal...")
    compose.up()

    client = VaultClient(settings.vault_addr, timeout=settings.http_timeout)
    info(f"Waiting for Vault to be ready at {settings.vault_addr}...")
    _wait(
        settings,
        client,
        is_reachable,
        settings.startup_attempts,
        "Vault startup",
        expect_initialized=False,
    )
    success("Vault is responding")

    info("Checking Vault initialization status...")
    if client.is_initialized():
        warning("Vault is already initialized")
    else:
        info("Initializing Vault with auto-unseal...")
        response = client.initialize(settings.recovery_shares, settings.recovery_threshold)
        save_init_response(response, settings.root_token_path, settings.recovery_keys_path)
        success("Vault initialized successfully with auto-unseal!")
        success(f"Recovery keys saved to {settings.recovery_keys_path.name}")
        success(f"Root token saved to {settings.root_token_path.name}")

    _wait(settings, client, is_unsealed, settings.verify_attempts, "Vault auto-unseal")
    success("Vault is unsealed automatically!")

    banner("VAULT SETUP COMPLETE!")
    print(f"Your HashiCorp Vault is running with {outputs.cloud_provider} KMS auto-unseal!")
    print(f"  URL: {settings.vault_addr}")
    print(f"  Key Vault: {outputs.key_vault_name}")
    print(f"  Key Name: {outputs.key_name}")
    print("")
    print("To connect to Vault:")
    print(f"  export VAULT_ADDR={settings.vault_addr}")
    if settings.root_token_path.exists():
        print(f"  export VAULT_TOKEN=$(cat {settings.root_token_path.name})")
    print("  vault status")


def test_vault(args: argparse.Namespace) -> None:
    settings = _settings(args)
    info("Testing HashiCorp Vault auto-unseal functionality...")
    client = VaultClient(settings.vault_addr, timeout=settings.http_timeout)
    compose = _compose(settings)
    gate = DeploymentStateComparator()
    container = settings.container_name

    try:
        client.health()
    except TransientUnreachable as e:
        raise CmdError(
            f"Vault is not running or not accessible at {settings.vault_addr} ({e})\n"
            "Run 'autounseal create-vault' first to set up Vault"
        ) from e
    success(f"Vault is accessible at {settings.vault_addr}")
    if not compose_available():
        raise CmdError("docker compose is not available.")

    info("Checking initial Vault status...")
    initial = client.seal_status()
    _print_json(status_view(initial))
    if initial.get("initialized") is not True:
        raise CmdError("Vault is not initialized. Run 'autounseal create-vault' first.")
    if initial.get("sealed") is not False:
        raise CmdError("Vault is currently sealed. This suggests auto-unseal is not working.")
    if not initial.get("type"):
        warning(f"Vault does not appear to be using auto-unseal (seal type: {initial.get('type')})")
    success("Initial state: Vault is initialized and unsealed")
    print(f"  Seal type: {initial.get('type')}")

    info("Test 1: Restarting Vault container to test auto-unseal...")
    started_before = container_started_at(container)
    info(f"Container start time before restart: {started_before}")
    compose.restart(settings.compose_service)
    started_after = container_started_at(container)
    info(f"Container start time after restart: {started_after}")
    gate.require_changed(started_before, started_after, "Container start time")
    success("Container successfully restarted (start time changed)")

    _wait(settings, client, is_unsealed, settings.verify_attempts, "Vault after restart")
    success("Auto-unseal working! Vault unsealed automatically after restart")

    info("Test 2: Stopping and starting Vault completely...")
    id_before = running_container_id(container)
    started_before = container_started_at(container)
    info(f"Container ID before stop: {id_before}")
    compose.stop()
    if not exited_container_ids(container):
        raise CmdError("Container may not have stopped properly")
    success("Container successfully stopped")

    info("Starting Vault again...")
    compose.start()
    id_after = running_container_id(container)
    info(f"Container ID after start: {id_after}")
    gate.require_unchanged(id_before, id_after, "Container ID")
    gate.require_changed(started_before, container_started_at(container), "Container start time")
    success("Container successfully restarted (same container ID)")

    _wait(settings, client, is_unsealed, settings.verify_attempts, "Vault after full restart")
    success("Auto-unseal working! Vault unsealed automatically after full restart")

    info("Test 3: Verifying Vault operations after auto-unseal...")
    if settings.root_token_path.exists():
        token = settings.root_token_path.read_text(encoding="utf-8").strip()
        authed = VaultClient(settings.vault_addr, token=token, timeout=settings.http_timeout)
        for line in verify_operations(authed):
            success(line)
        success("All Vault operations working correctly after auto-unseal")
    else:
        warning("No root token found, skipping operation verification")

    info("Final Vault status:")
    _print_json(status_view(client.seal_status(), extra=("version",)))

    banner("VAULT AUTO-UNSEAL TEST PASSED!")
    print("Auto-unseal functionality verified:")
    print("  - Vault automatically unseals after container restart")
    print("  - Vault automatically unseals after full stop/start")
    print("")
    print(f"Vault URL: {settings.vault_addr}")


def destroy_vault(args: argparse.Namespace) -> None:
    settings = _settings(args)
    remove_volumes = not args.preserve_volumes
    info("Cleaning up Vault client settings...")

    if not args.force:
        print("")
        warning("This will remove:")
        print("  - Vault Docker container")
        print("  - Vault configuration files")
        print("  - Recovery keys and root token")
        if remove_volumes:
            print("  - Docker volumes (ALL VAULT DATA WILL BE LOST)")
        else:
            print("  - Docker volumes will be PRESERVED")
        if not _confirm("Are you sure you want to continue?"):
            info("Operation cancelled")
            return

    compose = _compose(settings)
    info("Stopping Vault containers...")
    if settings.compose_service in compose.services():
        compose.down(volumes=remove_volumes)
        if remove_volumes:
            success("Vault containers and volumes removed")
        else:
            success("Vault containers removed (volumes preserved)")
    else:
        warning("No running Vault containers found")

    info("Cleaning up any remaining containers...")
    if container_exists(settings.container_name):
        remove_container(settings.container_name)
        success(f"Removed {settings.container_name} container")

    info("Cleaning up local configuration files...")
    for name in VAULT_GENERATED_FILES:
        if remove_path(settings.work_dir / name):
            success(f"Removed {name}")

    info("Checking remaining Docker volumes...")
    volumes = list_volumes(settings.volume_filter)
    if not volumes:
        success("No Vault volumes found")
    elif remove_volumes:
        warning("Volumes still present: " + ", ".join(volumes))
    else:
        warning("Vault data volumes preserved:")
        for v in volumes:
            print(f"  - {v}")
        info(f"To remove data volumes later, run: docker volume rm {' '.join(volumes)}")

    banner("VAULT CLEANUP COMPLETE!")
    print("The KMS infrastructure remains intact.")
    print("You can recreate Vault by running: autounseal create-vault")


def destroy_kms(args: argparse.Namespace) -> None:
    settings = _settings(args)
    info("Preparing to destroy KMS infrastructure...")
    outputs = load_outputs(settings)
    if outputs is None:
        warning("No KMS outputs found. Nothing to destroy.")
        return
    domain = outputs.deployment_domain or "unknown"
    provider = outputs.cloud_provider or "unknown"

    if not settings.tfvars_path.exists():
        info(f"Recreating {settings.tfvars_path.name} from outputs...")
        write_tfvars(
            settings,
            render_tfvars(
                settings,
                use_existing_shared_resources=True,
                cloud_provider=provider,
                deployment_domain=domain,
            ),
        )
        success(f"Recreated {settings.tfvars_path.name}")

    if not args.force:
        print("")
        warning("This will destroy KMS infrastructure for:")
        print(f"  - Deployment Domain: {domain}")
        print(f"  - Cloud Provider: {provider}")
        print("  - Service principal and credentials")
        print("  - Vault encryption key")
        print("  - Local CDKTF state files")
        if args.destroy_shared:
            print("  - Shared resources (Resource Group, Key Vault)")
            failure("WARNING: This will affect ALL deployments using shared resources!")
        else:
            print("  - Shared resources will be PRESERVED")
        if not _confirm("Are you sure you want to continue?"):
            info("Operation cancelled")
            return

    set_use_existing_shared(settings.tfvars_path, not args.destroy_shared)
    if args.destroy_shared:
        warning("Set to destroy shared resources")
    else:
        success("Set to preserve shared resources")

    missing = missing_tools(["cdktf"])
    if missing:
        raise CmdError(format_missing_tools_message(missing))
    info("Running cdktf destroy...")
    try:
        destroy(settings)
    except CmdError as e:
        raise CmdError(
            f"{e}\nCDKTF destroy timed out or failed; you may need to manually clean up resources in Azure"
        ) from e

    info("Cleaning up local state...")
    for p in cleanup_local_state(settings):
        success(f"Removed {p.name}")

    banner("KMS CLEANUP COMPLETE!")
    print(f"KMS infrastructure for deployment '{domain}' has been removed.")
    if args.destroy_shared:
        warning("All shared resources have been destroyed!")
    else:
        print("Shared resources preserved for other deployments")
    print("")
    print("To recreate: autounseal create-kms")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="autounseal", description="Vault with Azure Key Vault auto-unseal"
    )
    parser.add_argument("--work-dir", help="Directory for generated files (default: cwd)")
    parser.add_argument("--env-file", help="Settings file (default: <work-dir>/.env)")
    sub = parser.add_subparsers(dest="cmd", required=True)

    ck = sub.add_parser("create-kms", help="Provision the Key Vault key and service principal")
    ck.set_defaults(func=create_kms)

    tk = sub.add_parser("test-kms", help="Verify service principal auth and key wrap/unwrap")
    tk.set_defaults(func=test_kms)

    cv = sub.add_parser("create-vault", help="Start and initialize Vault with auto-unseal")
    cv.set_defaults(func=create_vault)

    tv = sub.add_parser("test-vault", help="Verify auto-unseal across restart and stop/start")
    tv.set_defaults(func=test_vault)

    dv = sub.add_parser("destroy-vault", help="Remove the Vault container and local files")
    dv.add_argument("--force", action="store_true", help="Skip confirmation prompts")
    dv.add_argument(
        "--preserve-volumes",
        action="store_true",
        help="Preserve Docker volumes (by default volumes are destroyed)",
    )
    dv.set_defaults(func=destroy_vault)

    dk = sub.add_parser("destroy-kms", help="Destroy the KMS deployment")
    dk.add_argument("--force", action="store_true", help="Skip confirmation prompts")
    dk.add_argument(
        "--destroy-shared",
        action="store_true",
        help="Destroy shared resources (WARNING: affects other deployments)",
    )
    dk.set_defaults(func=destroy_kms)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        args.func(args)
    except CmdError as e:
        failure(str(e))
        return 1
    except (ValueError, FileNotFoundError) as e:
        # Surface a concise, friendly message instead of a long traceback
        failure(f"Error: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
