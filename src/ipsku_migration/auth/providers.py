from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..util.errors import AuthenticationError, map_provider_error

try:
    from azure import identity as azure_identity  # type: ignore
except Exception:  # pragma: no cover - import error surfaced at runtime/CI
    azure_identity = None  # type: ignore

AUTH_METHODS = {"auto", "cli", "environment", "managed_identity"}
ARM_SCOPE = "https://management.azure.com/.default"


@dataclass(frozen=True)
class AuthContext:
    """
    Holds a resolved azure-identity credential used to construct management clients.
    tenant_id is optional; when set it pins credential flows that accept a tenant.
    """

    method: str  # auto|cli|environment|managed_identity (resolved final)
    credential: Any
    tenant_id: Optional[str] = None


def _require_identity() -> None:
    if azure_identity is None:
        raise AuthenticationError(
            "azure-identity is not installed. Install dependencies and try again: pip install ."
        )


def default_subscription_from_env() -> Optional[str]:
    return os.getenv("AZURE_SUBSCRIPTION_ID") or None


def resolve_auth(method: str, tenant_id: Optional[str] = None) -> AuthContext:
    """
    Resolve a credential according to the requested method.
    - auto: DefaultAzureCredential chain (environment, managed identity, Azure CLI, ...)
    - cli: the signed-in Azure CLI account
    - environment: service principal from AZURE_CLIENT_ID / AZURE_CLIENT_SECRET / AZURE_TENANT_ID
    - managed_identity: the host's managed identity
    """
    _require_identity()
    method = (method or "auto").lower()
    if method not in AUTH_METHODS:
        raise AuthenticationError(f"Unsupported auth method: {method}")

    kwargs: Dict[str, Any] = {}
    try:
        if method == "cli":
            if tenant_id:
                kwargs["tenant_id"] = tenant_id
            credential = azure_identity.AzureCliCredential(**kwargs)
        elif method == "environment":
            credential = azure_identity.EnvironmentCredential()
        elif method == "managed_identity":
            client_id = os.getenv("AZURE_CLIENT_ID")
            if client_id:
                kwargs["client_id"] = client_id
            credential = azure_identity.ManagedIdentityCredential(**kwargs)
        else:
            if tenant_id:
                kwargs["additionally_allowed_tenants"] = [tenant_id]
            credential = azure_identity.DefaultAzureCredential(**kwargs)
    except Exception as e:
        mapped = map_provider_error(e, "Azure SDK error while building credential")
        if isinstance(mapped, AuthenticationError):
            raise mapped from e
        raise AuthenticationError(f"Failed to resolve '{method}' credential: {e}") from e
    return AuthContext(method=method, credential=credential, tenant_id=tenant_id)


def verify_credential(ctx: AuthContext) -> None:
    """
    Request an ARM token so credential problems surface before any provider call.
    """
    try:
        ctx.credential.get_token(ARM_SCOPE)
    except Exception as e:
        mapped = map_provider_error(e, "Azure credential rejected")
        if isinstance(mapped, AuthenticationError):
            raise mapped from e
        raise AuthenticationError(f"Failed to acquire an ARM token using '{ctx.method}' credential: {e}") from e
