"""Mock managed identity credential.

Stands in for azure.identity.ManagedIdentityCredential when wiring the
operator against mocked Azure clients. Tokens are fake and no endpoint is
contacted.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

from azure.core.credentials import AccessToken

TOKEN_VALIDITY_HOURS = 1


class MockManagedIdentityCredential:
    """Records token requests and hands out fake tokens."""

    def __init__(self, client_id: str | None = None) -> None:
        self._client_id = client_id
        self._scopes_requested: list[tuple[str, ...]] = []

    @property
    def client_id(self) -> str | None:
        return self._client_id

    @property
    def get_token_call_count(self) -> int:
        return len(self._scopes_requested)

    def get_token(self, *scopes: str, **kwargs: Any) -> AccessToken:
        self._scopes_requested.append(scopes)
        expires_on = datetime.now(UTC) + timedelta(hours=TOKEN_VALIDITY_HOURS)
        identity = self._client_id or "system-assigned"
        return AccessToken(
            f"mock-token-{len(self._scopes_requested)}-{identity}",
            int(expires_on.timestamp()),
        )

    def close(self) -> None:
        pass

    def __enter__(self) -> MockManagedIdentityCredential:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


def create_mock_credential(client_id: str | None = None) -> MockManagedIdentityCredential:
    """Create a mock credential, optionally for a user-assigned identity."""
    return MockManagedIdentityCredential(client_id=client_id)
