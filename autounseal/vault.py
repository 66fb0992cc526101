"""
Vault HTTP client and auto-unseal readiness checks.

Only the handful of REST endpoints the automation needs. Network-level
failures surface as ``TransientUnreachable`` so the convergence poller keeps
retrying while the container is still coming up.
"""

from __future__ import annotations

import json
import socket
import urllib.error
import urllib.request
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .config import KmsOutputs
from .convergence import Check, Snapshot, TransientUnreachable
from .utils import CmdError

STATUS_FIELDS = ("initialized", "sealed", "type")


class VaultClient:
    def __init__(
        self,
        addr: str,
        token: Optional[str] = None,
        timeout: float = 5.0,
        opener: Optional[Callable[..., Any]] = None,
    ) -> None:
        self.addr = addr.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._open = opener or urllib.request.urlopen

    def _request(
        self, method: str, path: str, body: Optional[Dict[str, Any]] = None
    ) -> tuple[int, Dict[str, Any]]:
        url = f"{self.addr}/v1/{path.lstrip('/')}"
        data = json.dumps(body).encode("utf-8") if body is not None else None
        req = urllib.request.Request(url, data=data, method=method)
        if data is not None:
            req.add_header("Content-Type", "application/json")
        if self.token:
            req.add_header("X-Vault-Token", self.token)
        try:
            with self._open(req, timeout=self.timeout) as resp:
                status = resp.status
                raw = resp.read()
        except urllib.error.HTTPError as e:
            status = e.code
            raw = e.read() or b""
        except urllib.error.URLError as e:
            raise TransientUnreachable(f"{url}: {e.reason}") from e
        except (ConnectionError, socket.timeout, TimeoutError) as e:
            raise TransientUnreachable(f"{url}: {e}") from e
        if not raw:
            return status, {}
        try:
            payload = json.loads(raw.decode("utf-8"))
        except ValueError as e:
            raise TransientUnreachable(f"{url}: invalid JSON response (HTTP {status})") from e
        return status, payload if isinstance(payload, dict) else {"data": payload}

    def health(self) -> Dict[str, Any]:
        """Any HTTP answer from sys/health counts as reachable."""
        status, payload = self._request("GET", "sys/health")
        return {**payload, "status_code": status}

    def seal_status(self) -> Dict[str, Any]:
        status, payload = self._request("GET", "sys/seal-status")
        if status >= 500:
            raise TransientUnreachable(f"sys/seal-status returned HTTP {status}")
        return payload

    def is_initialized(self) -> bool:
        _, payload = self._request("GET", "sys/init")
        return payload.get("initialized") is True

    def initialize(self, recovery_shares: int, recovery_threshold: int) -> Dict[str, Any]:
        status, payload = self._request(
            "POST",
            "sys/init",
            {"recovery_shares": recovery_shares, "recovery_threshold": recovery_threshold},
        )
        if status != 200 or not payload.get("recovery_keys"):
            raise CmdError(f"Failed to initialize Vault (HTTP {status})\nResponse: {payload}")
        return payload

    def read(self, path: str) -> Dict[str, Any]:
        status, payload = self._request("GET", path)
        if status != 200:
            raise CmdError(f"GET {path} failed (HTTP {status}): {payload.get('errors', payload)}")
        return payload


def is_reachable(state: Snapshot) -> bool:
    return True


def is_unsealed(state: Snapshot) -> bool:
    return state.get("sealed") is False


def make_fatal_check(
    expect_initialized: bool = True, expect_auto_unseal: bool = True
) -> Check:
    """States from which Vault cannot reach 'unsealed' without intervention.

    - the API answered with an error document
    - an initialized Vault came back uninitialized (storage lost)
    - the seal is Shamir, so no KMS will ever unseal it
    """

    def check(state: Snapshot) -> bool:
        if state.get("errors") or state.get("error"):
            return True
        if expect_initialized and state.get("initialized") is False:
            return True
        if expect_auto_unseal and state.get("type") == "shamir":
            return True
        return False

    return check


def status_view(state: Snapshot, extra: tuple = ()) -> Dict[str, Any]:
    return {k: state.get(k) for k in (*STATUS_FIELDS, *extra)}


def render_vault_config(outputs: KmsOutputs) -> str:
    return f"""ui = true
disable_mlock = true

storage "raft" {{
  path = "/vault/file"
  node_id = "node1"
}}

listener "tcp" {{
  address     = "0.0.0.0:8200"
  tls_disable = "true"
}}

seal "azurekeyvault" {{
  tenant_id      = "{outputs.tenant_id}"
  client_id      = "{outputs.client_id}"
  client_secret  = "{outputs.client_secret}"
  vault_name     = "{outputs.key_vault_name}"
  key_name       = "{outputs.key_name}"
}}

api_addr = "http://127.0.0.1:8200"
cluster_addr = "https://127.0.0.1:8201"
"""


def save_init_response(response: Dict[str, Any], root_token_path: Path, recovery_keys_path: Path) -> None:
    keys: List[str] = [str(k) for k in response.get("recovery_keys", [])]
    recovery_keys_path.write_text("\n".join(keys) + "\n", encoding="utf-8")
    root_token_path.write_text(str(response.get("root_token", "")) + "\n", encoding="utf-8")
    for p in (recovery_keys_path, root_token_path):
        p.chmod(0o600)


def verify_operations(client: VaultClient) -> List[str]:
    """Exercise authenticated sys endpoints; returns one line per passed check."""
    passed: List[str] = []
    auth = client.read("sys/auth")
    if "token/" not in auth and "token/" not in auth.get("data", {}):
        raise CmdError("Cannot access auth methods")
    passed.append("Auth methods accessible")

    mounts = client.read("sys/mounts")
    if "sys/" not in mounts and "sys/" not in mounts.get("data", {}):
        raise CmdError("Cannot access system mounts")
    passed.append("System mounts accessible")

    policies = client.read("sys/policy")
    names = policies.get("policies")
    if names is None:
        names = policies.get("data", {}).get("policies")
    if names is None:
        raise CmdError("Cannot access policies")
    passed.append(f"Policies accessible (found {len(names)} policies)")

    me = client.read("auth/token/lookup-self")
    if not me.get("data", {}).get("id"):
        raise CmdError("Root token validation failed")
    passed.append("Root token valid and functional")
    return passed
