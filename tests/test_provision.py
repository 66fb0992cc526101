"""Tests for tfvars generation and local state handling."""

from pathlib import Path

import pytest

from autounseal import provision
from autounseal.config import Settings, load_settings
from autounseal.utils import CmdError


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    infra = tmp_path / "infra"
    infra.mkdir()
    return Settings(work_dir=tmp_path, infra_dir=infra)


def test_render_tfvars(settings: Settings) -> None:
    content = provision.render_tfvars(settings, use_existing_shared_resources=True)
    assert 'deployment_domain = "dev-gpu"' in content
    assert 'cloud_provider = "azure"' in content
    assert "use_existing_shared_resources = true" in content
    assert 'key_vault_name = "arbi-vault-shared-kv"' in content


def test_render_tfvars_overrides_domain(settings: Settings) -> None:
    content = provision.render_tfvars(
        settings, use_existing_shared_resources=False, deployment_domain="prod-eu"
    )
    assert 'deployment_domain = "prod-eu"' in content
    assert "use_existing_shared_resources = false" in content


def test_set_use_existing_shared_rewrites_flag(settings: Settings) -> None:
    path = provision.write_tfvars(
        settings, provision.render_tfvars(settings, use_existing_shared_resources=False)
    )
    provision.set_use_existing_shared(path, True)
    content = path.read_text()
    assert content.count("use_existing_shared_resources") == 1
    assert "use_existing_shared_resources = true" in content


def test_set_use_existing_shared_appends_when_absent(tmp_path: Path) -> None:
    path = tmp_path / "terraform.tfvars"
    path.write_text('deployment_domain = "dev-gpu"')
    provision.set_use_existing_shared(path, False)
    assert path.read_text().splitlines()[-1] == "use_existing_shared_resources = false"


def test_cleanup_local_state(settings: Settings) -> None:
    infra = settings.infra_dir
    (infra / "terraform.vault-kms.tfstate").write_text("{}")
    (infra / "terraform.vault-kms.tfstate.backup").write_text("{}")
    (infra / "cdktf.out" / "stacks").mkdir(parents=True)
    (infra / "main.py").write_text("")
    settings.tfvars_path.write_text("")
    settings.outputs_path.write_text("{}")

    removed = {p.name for p in provision.cleanup_local_state(settings)}

    assert removed == {
        "terraform.vault-kms.tfstate",
        "terraform.vault-kms.tfstate.backup",
        "cdktf.out",
        "terraform.tfvars",
        "kms-outputs.json",
    }
    assert (infra / "main.py").exists()


def test_deploy_runs_cdktf_and_reads_outputs(settings: Settings, monkeypatch) -> None:
    calls = []

    def fake_cdktf(project_dir, args, timeout=None, env=None):
        calls.append(args[0])
        if args[0] == "deploy":
            assert "--outputs-file-include-sensitive-outputs" in args
            settings.outputs_path.write_text(
                '{"vault-kms": {"cloud_provider": "azure", "key_name": "k"}}'
            )
        return ""

    monkeypatch.setattr(provision, "cdktf", fake_cdktf)
    outputs = provision.deploy(settings)
    assert calls == ["get", "synth", "deploy"]
    assert outputs.key_name == "k"


def test_deploy_without_outputs_file_fails(settings: Settings, monkeypatch) -> None:
    monkeypatch.setattr(provision, "cdktf", lambda project_dir, args, timeout=None, env=None: "")
    with pytest.raises(CmdError, match="did not write"):
        provision.deploy(settings)


def test_destroy_passes_timeout(settings: Settings, monkeypatch) -> None:
    seen = {}

    def fake_cdktf(project_dir, args, timeout=None, env=None):
        seen["args"] = args
        seen["timeout"] = timeout
        seen["env"] = env
        return ""

    monkeypatch.setattr(provision, "cdktf", fake_cdktf)
    provision.destroy(settings)
    assert seen["args"] == ["destroy", "vault-kms", "--auto-approve"]
    assert seen["timeout"] == settings.destroy_timeout
    assert seen["env"]["STACK_NAME"] == "vault-kms"


def test_stack_name_from_env_file_reaches_cdktf_app(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.delenv("STACK_NAME", raising=False)
    monkeypatch.delenv("INFRA_DIR", raising=False)
    monkeypatch.setenv("ARM_SUBSCRIPTION_ID", "sub-1")
    infra = tmp_path / "infra"
    infra.mkdir()
    (tmp_path / ".env").write_text(f"STACK_NAME=vault-kms-team2\nINFRA_DIR={infra}\n")
    settings = load_settings(work_dir=tmp_path)
    envs = []

    def fake_cdktf(project_dir, args, timeout=None, env=None):
        envs.append(env)
        if args[0] == "deploy":
            assert args[1] == "vault-kms-team2"
            settings.outputs_path.write_text('{"vault-kms-team2": {"key_name": "k"}}')
        return ""

    monkeypatch.setattr(provision, "cdktf", fake_cdktf)
    provision.deploy(settings)

    assert len(envs) == 3
    for env in envs:
        assert env["STACK_NAME"] == "vault-kms-team2"
        assert env["ARM_SUBSCRIPTION_ID"] == "sub-1"


def test_missing_project_dir_points_at_infra_dir(tmp_path: Path) -> None:
    settings = Settings(work_dir=tmp_path, infra_dir=tmp_path / "absent")
    with pytest.raises(CmdError, match="set INFRA_DIR"):
        provision.deploy(settings)
