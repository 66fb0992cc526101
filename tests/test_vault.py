"""Tests for the Vault HTTP client and readiness checks."""

import io
import json
import urllib.error
from pathlib import Path

import pytest

from autounseal.config import KmsOutputs
from autounseal.convergence import TransientUnreachable
from autounseal.utils import CmdError
from autounseal.vault import (
    VaultClient,
    is_unsealed,
    make_fatal_check,
    render_vault_config,
    save_init_response,
    status_view,
    verify_operations,
)


class FakeResponse:
    def __init__(self, status: int, body: bytes) -> None:
        self.status = status
        self._body = body

    def read(self) -> bytes:
        return self._body

    def __enter__(self):
        return self

    def __exit__(self, *exc) -> None:
        return None


class FakeVaultServer:
    """Routes requests by path; a route may be a (status, payload) or an exception."""

    def __init__(self, routes):
        self.routes = routes
        self.requests = []

    def __call__(self, req, timeout=None):
        self.requests.append(req)
        path = req.full_url.split("/v1/", 1)[1]
        route = self.routes[path]
        if isinstance(route, BaseException):
            raise route
        status, payload = route
        body = json.dumps(payload).encode("utf-8") if payload is not None else b""
        if status >= 400:
            raise urllib.error.HTTPError(req.full_url, status, "error", {}, io.BytesIO(body))
        return FakeResponse(status, body)


def client_for(routes, token=None):
    server = FakeVaultServer(routes)
    return VaultClient("http://vault.test:8210/", token=token, opener=server), server


class TestVaultClient:
    def test_seal_status_returns_payload(self) -> None:
        client, server = client_for(
            {"sys/seal-status": (200, {"initialized": True, "sealed": False, "type": "azurekeyvault"})}
        )
        state = client.seal_status()
        assert state["sealed"] is False
        assert server.requests[0].full_url == "http://vault.test:8210/v1/sys/seal-status"

    def test_connection_refused_is_transient(self) -> None:
        client, _ = client_for(
            {"sys/seal-status": urllib.error.URLError(ConnectionRefusedError(111, "refused"))}
        )
        with pytest.raises(TransientUnreachable):
            client.seal_status()

    def test_reset_during_startup_is_transient(self) -> None:
        client, _ = client_for({"sys/seal-status": ConnectionResetError("reset by peer")})
        with pytest.raises(TransientUnreachable):
            client.seal_status()

    def test_server_error_is_transient(self) -> None:
        client, _ = client_for({"sys/seal-status": (503, {"errors": ["Vault is sealed"]})})
        with pytest.raises(TransientUnreachable, match="503"):
            client.seal_status()

    def test_client_error_payload_is_returned_for_fatal_check(self) -> None:
        client, _ = client_for({"sys/seal-status": (400, {"errors": ["bad request"]})})
        assert client.seal_status() == {"errors": ["bad request"]}

    def test_garbage_body_is_transient(self) -> None:
        def opener(req, timeout=None):
            return FakeResponse(200, b"<html>starting</html>")

        client = VaultClient("http://vault.test", opener=opener)
        with pytest.raises(TransientUnreachable, match="invalid JSON"):
            client.seal_status()

    def test_health_reports_status_code_for_sealed_vault(self) -> None:
        client, _ = client_for({"sys/health": (503, {"sealed": True})})
        assert client.health() == {"sealed": True, "status_code": 503}

    def test_initialize_posts_recovery_settings(self) -> None:
        client, server = client_for(
            {"sys/init": (200, {"recovery_keys": ["k1", "k2"], "root_token": "hvs.root"})}
        )
        resp = client.initialize(5, 3)
        assert resp["root_token"] == "hvs.root"
        req = server.requests[0]
        assert req.get_method() == "POST"
        assert json.loads(req.data) == {"recovery_shares": 5, "recovery_threshold": 3}

    def test_initialize_without_recovery_keys_fails(self) -> None:
        client, _ = client_for({"sys/init": (400, {"errors": ["already initialized"]})})
        with pytest.raises(CmdError, match="Failed to initialize Vault"):
            client.initialize(5, 3)

    def test_token_header_sent(self) -> None:
        client, server = client_for({"sys/auth": (200, {"token/": {}})}, token="hvs.root")
        client.read("sys/auth")
        assert server.requests[0].get_header("X-vault-token") == "hvs.root"


class TestChecks:
    def test_unsealed_requires_explicit_false(self) -> None:
        assert is_unsealed({"sealed": False})
        assert not is_unsealed({"sealed": True})
        assert not is_unsealed({})

    def test_fatal_on_error_document(self) -> None:
        check = make_fatal_check()
        assert check({"sealed": True, "error": "permanently locked"})
        assert check({"errors": ["permission denied"]})

    def test_fatal_when_storage_lost(self) -> None:
        assert make_fatal_check()({"initialized": False, "sealed": True, "type": "azurekeyvault"})
        assert not make_fatal_check(expect_initialized=False)(
            {"initialized": False, "sealed": True, "type": "azurekeyvault"}
        )

    def test_fatal_when_seal_is_shamir(self) -> None:
        assert make_fatal_check()({"initialized": True, "sealed": True, "type": "shamir"})

    def test_sealed_auto_unseal_vault_is_not_fatal(self) -> None:
        assert not make_fatal_check()({"initialized": True, "sealed": True, "type": "azurekeyvault"})

    def test_status_view_picks_fields(self) -> None:
        state = {"initialized": True, "sealed": False, "type": "azurekeyvault", "version": "1.17.0", "n": 5}
        assert status_view(state) == {"initialized": True, "sealed": False, "type": "azurekeyvault"}
        assert status_view(state, extra=("version",))["version"] == "1.17.0"


def test_render_vault_config_uses_outputs() -> None:
    outputs = KmsOutputs(
        cloud_provider="azure",
        tenant_id="tenant-1",
        client_id="client-1",
        client_secret="s3cret",
        key_vault_name="arbi-vault-shared-kv",
        key_name="vault-unseal-dev-gpu",
    )
    hcl = render_vault_config(outputs)
    assert 'seal "azurekeyvault"' in hcl
    assert 'tenant_id      = "tenant-1"' in hcl
    assert 'vault_name     = "arbi-vault-shared-kv"' in hcl
    assert 'key_name       = "vault-unseal-dev-gpu"' in hcl
    assert 'storage "raft"' in hcl


def test_save_init_response_writes_private_files(tmp_path: Path) -> None:
    token = tmp_path / "root-token.txt"
    keys = tmp_path / "recovery-keys.txt"
    save_init_response({"recovery_keys": ["a", "b", "c"], "root_token": "hvs.x"}, token, keys)
    assert keys.read_text().split() == ["a", "b", "c"]
    assert token.read_text().strip() == "hvs.x"
    assert token.stat().st_mode & 0o777 == 0o600


class TestVerifyOperations:
    ROUTES = {
        "sys/auth": (200, {"token/": {"type": "token"}}),
        "sys/mounts": (200, {"sys/": {"type": "system"}}),
        "sys/policy": (200, {"policies": ["default", "root"]}),
        "auth/token/lookup-self": (200, {"data": {"id": "hvs.root"}}),
    }

    def test_all_checks_pass(self) -> None:
        client, _ = client_for(dict(self.ROUTES), token="hvs.root")
        lines = verify_operations(client)
        assert len(lines) == 4
        assert "found 2 policies" in lines[2]

    def test_missing_token_auth_fails(self) -> None:
        routes = dict(self.ROUTES, **{"sys/auth": (200, {"userpass/": {}})})
        client, _ = client_for(routes, token="hvs.root")
        with pytest.raises(CmdError, match="auth methods"):
            verify_operations(client)

    def test_forbidden_token_fails(self) -> None:
        routes = dict(self.ROUTES, **{"auth/token/lookup-self": (403, {"errors": ["permission denied"]})})
        client, _ = client_for(routes, token="hvs.bad")
        with pytest.raises(CmdError, match="HTTP 403"):
            verify_operations(client)
