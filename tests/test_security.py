"""Tests for managed-identity-only credential enforcement."""

from __future__ import annotations

import os
from unittest import mock

import pytest

from vmss_operator.security import (
    FORBIDDEN_CREDENTIAL_ENV_VARS,
    SecretlessViolationError,
    enforce_secretless_architecture,
    get_managed_identity_credential,
)


class TestSecretlessEnforcement:
    """Tests for startup credential checks."""

    def test_clean_environment_passes(self) -> None:
        """Test that enforcement passes with no credential env vars."""
        with mock.patch.dict(os.environ, {}, clear=True):
            enforce_secretless_architecture()

    @pytest.mark.parametrize("env_var", FORBIDDEN_CREDENTIAL_ENV_VARS)
    def test_forbidden_env_var_raises(self, env_var: str) -> None:
        """Test that each forbidden env var blocks startup."""
        with mock.patch.dict(os.environ, {env_var: "some-secret-value"}, clear=True):
            with pytest.raises(SecretlessViolationError) as exc_info:
                enforce_secretless_architecture()

            assert env_var in str(exc_info.value)
            assert "managed identity" in str(exc_info.value)

    def test_empty_value_is_ignored(self) -> None:
        """Test that a set-but-empty variable is not a violation."""
        with mock.patch.dict(os.environ, {"AZURE_CLIENT_SECRET": ""}, clear=True):
            enforce_secretless_architecture()


class TestGetManagedIdentityCredential:
    """Tests for the managed identity credential getter."""

    def test_rejects_secret_env_var(self) -> None:
        """Test that the getter enforces the environment check first."""
        with mock.patch.dict(os.environ, {"AZURE_CLIENT_SECRET": "secret"}, clear=True):
            with pytest.raises(SecretlessViolationError):
                get_managed_identity_credential()

    @mock.patch("vmss_operator.security.ManagedIdentityCredential")
    def test_returns_system_assigned_by_default(self, mock_credential_class: mock.Mock) -> None:
        """Test that the system-assigned identity is used without a client id."""
        with mock.patch.dict(os.environ, {}, clear=True):
            result = get_managed_identity_credential()

        mock_credential_class.assert_called_once_with()
        assert result is mock_credential_class.return_value

    @mock.patch("vmss_operator.security.ManagedIdentityCredential")
    def test_returns_user_assigned_with_client_id(self, mock_credential_class: mock.Mock) -> None:
        """Test that a client id selects the user-assigned identity."""
        with mock.patch.dict(os.environ, {}, clear=True):
            get_managed_identity_credential(client_id="11111111-2222-3333-4444-555555555555")

        mock_credential_class.assert_called_once_with(
            client_id="11111111-2222-3333-4444-555555555555"
        )
