"""
HashiCorp Vault access for the identity service's secrets.

AppRole login from VAULT_* environment variables. Secrets live under the
'localseo/' KV v2 mount path; each secret is read once per process and
cached whole, so the email gateway settings cost a single round trip.
"""

import os
import logging
from typing import Dict

import hvac
from hvac.exceptions import InvalidPath, Unauthorized, Forbidden, VaultError

logger = logging.getLogger(__name__)

_SECRET_PREFIX = "localseo"

_vault_client_instance: "VaultClient | None" = None
_secret_cache: Dict[str, Dict[str, str]] = {}


def _ensure_vault_client() -> "VaultClient":
    global _vault_client_instance
    if _vault_client_instance is None:
        _vault_client_instance = VaultClient()
    return _vault_client_instance


class VaultClient:
    """Authenticated hvac wrapper. Construction fails if Vault is unreachable or refuses us."""

    def __init__(
        self,
        vault_addr: str | None = None,
        vault_namespace: str | None = None,
    ):
        self.vault_addr = vault_addr or os.getenv("VAULT_ADDR")
        namespace = vault_namespace or os.getenv("VAULT_NAMESPACE")
        role_id = os.getenv("VAULT_ROLE_ID")
        secret_id = os.getenv("VAULT_SECRET_ID")

        if not self.vault_addr:
            raise ValueError("VAULT_ADDR environment variable is required")
        if not role_id or not secret_id:
            raise ValueError(
                "VAULT_ROLE_ID and VAULT_SECRET_ID environment variables are required"
            )

        client_kwargs = {"url": self.vault_addr}
        if namespace:
            client_kwargs["namespace"] = namespace
        self.client = hvac.Client(**client_kwargs)
        self.client.token = self._login(role_id, secret_id)

        if not self.client.is_authenticated():
            raise PermissionError("Vault authentication failed")
        logger.info(f"Vault client ready: {self.vault_addr}")

    def _login(self, role_id: str, secret_id: str) -> str:
        try:
            response = self.client.auth.approle.login(role_id=role_id, secret_id=secret_id)
        except VaultError as e:
            logger.error(f"AppRole authentication failed: {e}")
            raise PermissionError(f"AppRole authentication failed: {e}")
        return response["auth"]["client_token"]

    def read_secret(self, path: str) -> Dict[str, str]:
        """
        All fields of 'localseo/<path>'.

        Raises:
            PermissionError: Path missing or access denied.
        """
        full_path = f"{_SECRET_PREFIX}/{path}"
        try:
            response = self.client.secrets.kv.v2.read_secret_version(
                path=full_path, raise_on_deleted_version=True
            )
        except InvalidPath:
            logger.error(f"Secret path not found: {full_path}")
            raise PermissionError(f"Secret path '{full_path}' not found in Vault")
        except (Unauthorized, Forbidden) as e:
            logger.error(f"Access denied to secret {full_path}: {e}")
            raise PermissionError(f"Access denied to secret '{full_path}': {e}")
        return response["data"]["data"]

    def get_secret(self, path: str, field: str) -> str:
        """
        One field of 'localseo/<path>'.

        Raises:
            PermissionError: Path missing or access denied.
            KeyError: Field not present in the secret.
        """
        return _pick(self.read_secret(path), path, field)


def _pick(secret: Dict[str, str], path: str, field: str) -> str:
    if field not in secret:
        raise KeyError(
            f"Field '{field}' not found in secret '{_SECRET_PREFIX}/{path}'. "
            f"Available: {', '.join(secret.keys())}"
        )
    return secret[field]


def _cached(path: str) -> Dict[str, str]:
    if path not in _secret_cache:
        _secret_cache[path] = _ensure_vault_client().read_secret(path)
    return _secret_cache[path]


def get_database_url() -> str:
    """PostgreSQL connection URL for the identity store."""
    return _pick(_cached("database"), "database", "url")


def get_valkey_url() -> str:
    """Valkey URL for the session store."""
    return _pick(_cached("valkey"), "valkey", "url")


def get_hmac_secret() -> str:
    """Server-side secret keying OTP code hashes and invite token lookups."""
    return _pick(_cached("identity"), "identity", "hmac_secret")


def get_email_config() -> Dict[str, str]:
    """Gateway URL, API key and signing secret for the email gateway."""
    secret = _cached("email")
    return {
        field: _pick(secret, "email", field)
        for field in ("gateway_url", "api_key", "hmac_secret")
    }
