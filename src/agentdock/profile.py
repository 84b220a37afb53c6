"""Server profile configuration and derived endpoint/header values."""

from __future__ import annotations

import uuid
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_SCHEME = "ws"
GATEWAY_CLIENT_ID_HEADER = "CF-Access-Client-Id"
GATEWAY_CLIENT_SECRET_HEADER = "CF-Access-Client-Secret"


class ServerProfile(BaseModel):
    """Connection settings for one remote agent server.

    Profiles are edited in place by the user, so assignments are validated.
    """

    model_config = ConfigDict(extra="ignore", validate_assignment=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str = ""
    scheme: str = DEFAULT_SCHEME
    host: str = ""
    token: str = ""
    cf_access_client_id: str = ""
    cf_access_client_secret: str = ""
    working_directory: str = ""
    protocol: Literal["acp", "codex"] = "acp"

    @property
    def display_name(self) -> str:
        return self.name.strip() or self.host.strip() or "Server"

    @property
    def endpoint_url(self) -> str:
        host = self.host.strip().rstrip("/")
        if not host:
            return ""
        if "://" in host:
            return host
        scheme = self.scheme.strip().rstrip(":/") or DEFAULT_SCHEME
        return f"{scheme}://{host}"

    def gateway_headers(self) -> dict[str, str]:
        """Access-gateway headers; empty unless both id and secret are set."""
        client_id = self.cf_access_client_id.strip()
        client_secret = self.cf_access_client_secret.strip()
        if not client_id or not client_secret:
            return {}
        return {
            GATEWAY_CLIENT_ID_HEADER: client_id,
            GATEWAY_CLIENT_SECRET_HEADER: client_secret,
        }

    def request_headers(self) -> dict[str, str]:
        headers: dict[str, str] = {}
        token = self.token.strip()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        headers.update(self.gateway_headers())
        return headers
