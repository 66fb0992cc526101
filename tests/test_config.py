"""Tests for settings, outputs and preflight validation."""

import json
from pathlib import Path

import pytest

from autounseal.config import (
    KmsOutputs,
    load_outputs,
    load_settings,
    parse_env_file,
    read_outputs_file,
)
from autounseal.validation import (
    format_missing_outputs_message,
    format_missing_tools_message,
    missing_tools,
    provider_error,
)


def test_parse_env_file_handles_comments_quotes_and_export() -> None:
    content = "\n".join(
        [
            "# comment",
            "VAULT_ADDR=http://localhost:8300",
            'export DEPLOYMENT_DOMAIN="prod-eu"',
            "KEY_VAULT_NAME='team-kv'",
            "VAULT_POLL_INTERVAL=0.5 # fast",
            "not a setting",
        ]
    )
    assert parse_env_file(content) == {
        "VAULT_ADDR": "http://localhost:8300",
        "DEPLOYMENT_DOMAIN": "prod-eu",
        "KEY_VAULT_NAME": "team-kv",
        "VAULT_POLL_INTERVAL": "0.5",
    }


class TestLoadSettings:
    def test_defaults(self, tmp_path: Path) -> None:
        settings = load_settings(work_dir=tmp_path, environ={})
        assert settings.vault_addr == "http://localhost:8210"
        assert settings.verify_attempts == 15
        assert settings.poll_deadline is None
        assert settings.outputs_path == tmp_path.resolve() / "kms-outputs.json"

    def test_environment_overrides_env_file(self, tmp_path: Path) -> None:
        (tmp_path / ".env").write_text(
            "VAULT_ADDR=http://from-file:8200\nVAULT_VERIFY_ATTEMPTS=7\n"
        )
        settings = load_settings(
            work_dir=tmp_path, environ={"VAULT_ADDR": "http://from-env:8200"}
        )
        assert settings.vault_addr == "http://from-env:8200"
        assert settings.verify_attempts == 7

    def test_infra_dir_found_next_to_work_dir(self, tmp_path: Path) -> None:
        (tmp_path / "infra").mkdir()
        settings = load_settings(work_dir=tmp_path, environ={})
        assert settings.infra_dir == tmp_path.resolve() / "infra"
        assert settings.tfvars_path == tmp_path.resolve() / "infra" / "terraform.tfvars"

    def test_infra_dir_setting_wins(self, tmp_path: Path) -> None:
        (tmp_path / "infra").mkdir()
        other = tmp_path / "elsewhere"
        settings = load_settings(work_dir=tmp_path, environ={"INFRA_DIR": str(other)})
        assert settings.infra_dir == other

    def test_numeric_conversion(self, tmp_path: Path) -> None:
        settings = load_settings(
            work_dir=tmp_path,
            environ={"VAULT_POLL_INTERVAL": "0.25", "VAULT_POLL_DEADLINE": "90"},
        )
        assert settings.poll_interval == 0.25
        assert settings.poll_deadline == 90.0

    def test_blank_values_are_ignored(self, tmp_path: Path) -> None:
        settings = load_settings(work_dir=tmp_path, environ={"VAULT_ADDR": "  "})
        assert settings.vault_addr == "http://localhost:8210"

    def test_bad_number_is_rejected(self, tmp_path: Path) -> None:
        with pytest.raises(ValueError, match="Invalid int value"):
            load_settings(work_dir=tmp_path, environ={"VAULT_VERIFY_ATTEMPTS": "many"})

    def test_threshold_cannot_exceed_shares(self, tmp_path: Path) -> None:
        with pytest.raises(ValueError, match="threshold"):
            load_settings(
                work_dir=tmp_path,
                environ={"VAULT_RECOVERY_SHARES": "2", "VAULT_RECOVERY_THRESHOLD": "3"},
            )

    def test_explicit_env_file_must_exist(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_settings(work_dir=tmp_path, env_file=tmp_path / "missing.env", environ={})


class TestOutputs:
    STACK_OUTPUTS = {
        "vault-kms": {
            "cloud_provider": "azure",
            "azure_tenant_id": "tenant-1",
            "client_id": "client-1",
            "client_secret": "s3cret",
            "key_vault_name": "arbi-vault-shared-kv",
            "key_name": "vault-unseal-dev-gpu",
            "deployment_domain": "dev-gpu",
        }
    }

    def test_read_outputs_file_flattens_stack(self, tmp_path: Path) -> None:
        path = tmp_path / "kms-outputs.json"
        path.write_text(json.dumps(self.STACK_OUTPUTS))
        assert read_outputs_file(path, "vault-kms")["key_name"] == "vault-unseal-dev-gpu"
        # single stack is picked even when the name differs
        assert read_outputs_file(path, "other")["client_id"] == "client-1"

    def test_load_outputs_maps_names(self, tmp_path: Path) -> None:
        (tmp_path / "kms-outputs.json").write_text(json.dumps(self.STACK_OUTPUTS))
        outputs = load_outputs(load_settings(work_dir=tmp_path, environ={}))
        assert outputs is not None
        assert outputs.tenant_id == "tenant-1"
        assert outputs.missing() == []

    def test_load_outputs_absent(self, tmp_path: Path) -> None:
        assert load_outputs(load_settings(work_dir=tmp_path, environ={})) is None

    def test_missing_fields_reported(self) -> None:
        outputs = KmsOutputs.from_outputs({"cloud_provider": "azure", "client_secret": None})
        assert outputs.client_secret == ""
        assert outputs.missing(["client_id", "client_secret", "cloud_provider"]) == [
            "client_id",
            "client_secret",
        ]
        message = format_missing_outputs_message(outputs, ["client_id"])
        assert "  - client_id" in message
        assert "autounseal create-kms" in message


class TestPreflight:
    def test_missing_tools_uses_which(self) -> None:
        which = {"az": "/usr/bin/az"}.get
        assert missing_tools(["az", "cdktf"], which=which) == ["cdktf"]

    def test_missing_tools_message_has_hints(self) -> None:
        message = format_missing_tools_message(["cdktf"])
        assert "npm install --global cdktf-cli" in message
        assert format_missing_tools_message([]) == ""

    @pytest.mark.parametrize(
        "provider, expected",
        [
            ("azure", ""),
            ("", "Could not detect cloud provider"),
            ("unknown", "Could not detect cloud provider"),
            ("aws", "AWS provider not yet implemented"),
            ("gcp", "GCP provider not yet implemented"),
            ("oci", "Unsupported provider: oci"),
        ],
    )
    def test_provider_error(self, provider, expected) -> None:
        if expected:
            assert expected in provider_error(provider)
        else:
            assert provider_error(provider) == ""
