"""
Azure KMS checks.

Authenticates as the provisioned service principal and round-trips a test
key through Key Vault wrap/unwrap, the same operations Vault's
``azurekeyvault`` seal performs at unseal time.
"""

from __future__ import annotations

import base64
import json
import time
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, Callable, Dict, Optional

from .config import KmsOutputs, Settings
from .utils import CmdError, az_query

LOGIN_URL = "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token"
KEY_VAULT_SCOPE = "https://vault.azure.net/.default"
KEY_VAULT_API_VERSION = "7.4"
WRAP_ALGORITHM = "RSA-OAEP"


def _post(
    url: str,
    data: bytes,
    headers: Dict[str, str],
    timeout: float,
    opener: Callable[..., Any],
) -> Dict[str, Any]:
    req = urllib.request.Request(url, data=data, method="POST")
    for k, v in headers.items():
        req.add_header(k, v)
    try:
        with opener(req, timeout=timeout) as resp:
            raw = resp.read()
    except urllib.error.HTTPError as e:
        raw = e.read() or b""
    except urllib.error.URLError as e:
        raise CmdError(f"Request to {url} failed: {e.reason}") from e
    try:
        payload = json.loads(raw.decode("utf-8")) if raw else {}
    except ValueError:
        payload = {"raw": raw.decode("utf-8", errors="replace")}
    return payload if isinstance(payload, dict) else {"data": payload}


class KeyVaultKeyClient:
    def __init__(
        self,
        outputs: KmsOutputs,
        timeout: float = 10.0,
        opener: Optional[Callable[..., Any]] = None,
    ) -> None:
        self.outputs = outputs
        self.timeout = timeout
        self._open = opener or urllib.request.urlopen
        self._token: Optional[str] = None

    def authenticate(self) -> str:
        form = urllib.parse.urlencode(
            {
                "grant_type": "client_credentials",
                "client_id": self.outputs.client_id,
                "client_secret": self.outputs.client_secret,
                "scope": KEY_VAULT_SCOPE,
            }
        ).encode("ascii")
        resp = _post(
            LOGIN_URL.format(tenant=self.outputs.tenant_id),
            form,
            {"Content-Type": "application/x-www-form-urlencoded"},
            self.timeout,
            self._open,
        )
        token = resp.get("access_token")
        if not token:
            # Token endpoint errors carry no secrets, only codes and descriptions
            detail = resp.get("error_description") or resp.get("error") or resp
            raise CmdError(f"Service principal authentication failed\nResponse: {detail}")
        self._token = str(token)
        return self._token

    def _key_op(self, op: str, value: str) -> str:
        if self._token is None:
            self.authenticate()
        url = (
            f"https://{self.outputs.key_vault_name}.vault.azure.net/keys/"
            f"{self.outputs.key_name}/{op}?api-version={KEY_VAULT_API_VERSION}"
        )
        body = json.dumps({"value": value, "alg": WRAP_ALGORITHM}).encode("utf-8")
        resp = _post(
            url,
            body,
            {"Authorization": f"Bearer {self._token}", "Content-Type": "application/json"},
            self.timeout,
            self._open,
        )
        result = resp.get("value")
        if not result:
            raise CmdError(f"Key {op} operation failed\nResponse: {resp.get('error', resp)}")
        return str(result)

    def wrap(self, plaintext: bytes) -> str:
        return self._key_op("wrapkey", b64url_encode(plaintext))

    def unwrap(self, wrapped: str) -> bytes:
        return b64url_decode(self._key_op("unwrapkey", wrapped))


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def b64url_decode(value: str) -> bytes:
    padded = value + "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def roundtrip_test_key(client: KeyVaultKeyClient, now: Callable[[], float] = time.time) -> str:
    """Wrap then unwrap a throwaway key; returns the key that survived the trip."""
    test_key = f"test-master-key-{int(now())}"
    wrapped = client.wrap(test_key.encode("utf-8"))
    unwrapped = client.unwrap(wrapped)
    if unwrapped.decode("utf-8", errors="replace") != test_key:
        raise CmdError("Key unwrap operation failed - key mismatch")
    return test_key


def azure_logged_in() -> bool:
    return bool(az_query(["account", "show", "--query", "id", "-o", "tsv"]))


def shared_resources_exist(settings: Settings) -> bool:
    rg = az_query(
        ["group", "show", "--name", settings.resource_group_name, "--query", "name", "-o", "tsv"]
    )
    kv = az_query(
        ["keyvault", "show", "--name", settings.key_vault_name, "--query", "name", "-o", "tsv"]
    )
    return bool(rg and kv)
