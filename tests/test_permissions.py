"""
Unit tests for the permission upgrade (graph_bridge/permissions.py).

The upgrade must never touch the manager it was given. Every test that
expects a failure therefore also checks that the old manager still holds its
original credential.
"""

import pytest
from azure.core.exceptions import ClientAuthenticationError

from graph_bridge.auth import AuthMode, ScopeValidationError
from graph_bridge.permissions import (
    ScopeUpgrade,
    UpgradeFailure,
    remediation_message,
    request_additional_scopes,
    validate_scopes,
)


def upgrade(manager, scopes, **kwargs):
    config = manager.config
    return request_additional_scopes(
        manager,
        scopes,
        tenant_id=config.tenant_id,
        client_id=config.client_id,
        redirect_uri=config.redirect_uri,
        **kwargs,
    )


class TestValidateScopes:
    @pytest.mark.parametrize("scopes", [["User.Read"], ["Mail.ReadWrite", "Sites.Read.All"]])
    def test_well_formed_scopes_pass(self, scopes):
        validate_scopes(scopes)

    def test_empty_list_is_rejected(self):
        with pytest.raises(ScopeValidationError, match="At least one permission scope"):
            validate_scopes([])

    def test_every_invalid_scope_is_reported(self):
        with pytest.raises(ScopeValidationError) as excinfo:
            validate_scopes(["User.Read", "Invalid", " Mail.Read", "Files.Read "])

        assert excinfo.value.invalid_scopes == ["Invalid", " Mail.Read", "Files.Read "]
        assert "'Invalid'" in excinfo.value.message


class TestRemediationMessage:
    def test_app_only_modes_point_at_app_registration(self):
        message = remediation_message(AuthMode.CERTIFICATE, ["User.Read.All"], client_id="app-client-id")

        assert "Current mode: certificate" in message
        assert "App registrations" in message
        assert "(Client ID: app-client-id)" in message
        assert "   - User.Read.All" in message
        assert "Grant admin consent" in message

    def test_token_mode_points_at_set_access_token(self):
        message = remediation_message(AuthMode.CLIENT_PROVIDED_TOKEN, ["Mail.Read"])

        assert "set-access-token" in message
        assert "   - Mail.Read" in message
        assert "App registrations" not in message


class TestRequestAdditionalScopes:
    # ----- Mode gate -----

    @pytest.mark.parametrize(
        "mode", [AuthMode.CLIENT_CREDENTIALS, AuthMode.CERTIFICATE]
    )
    def test_app_only_modes_are_refused(self, library_manager, identity, mode):
        manager = library_manager(mode)
        credential = manager.credential
        created_before = len(identity.created)

        outcome = upgrade(manager, ["User.Read.All"])

        assert isinstance(outcome, UpgradeFailure)
        assert outcome.reason == "unsupported_mode"
        assert "Microsoft Entra admin center" in outcome.message
        assert manager.credential is credential
        assert len(identity.created) == created_before

    def test_token_mode_is_refused(self, token_manager, identity):
        manager = token_manager("abc")

        outcome = request_additional_scopes(
            manager, ["Mail.Read"], tenant_id="common", client_id="app-client-id"
        )

        assert isinstance(outcome, UpgradeFailure)
        assert outcome.reason == "unsupported_mode"
        assert "set-access-token" in outcome.message
        assert identity.created == []

    def test_mode_gate_runs_before_validation(self, library_manager):
        """A refused mode is reported as such even when the scopes are also malformed."""
        outcome = upgrade(library_manager(AuthMode.CLIENT_CREDENTIALS), ["Invalid"])

        assert outcome.reason == "unsupported_mode"

    def test_missing_manager_is_refused(self):
        outcome = request_additional_scopes(None, ["User.Read"], tenant_id="common", client_id="app")

        assert isinstance(outcome, UpgradeFailure)
        assert outcome.reason == "unsupported_mode"

    # ----- Validation -----

    def test_invalid_scopes_skip_sign_in(self, library_manager, identity):
        manager = library_manager(AuthMode.INTERACTIVE)
        created_before = len(identity.created)

        outcome = upgrade(manager, ["User.Read", "Invalid"])

        assert isinstance(outcome, UpgradeFailure)
        assert outcome.reason == "invalid_scopes"
        assert outcome.invalid_scopes == ["Invalid"]
        assert len(identity.created) == created_before

    # ----- Sign-in -----

    def test_success_returns_new_manager(self, library_manager, identity):
        manager = library_manager(AuthMode.INTERACTIVE)
        old_credential = manager.credential

        outcome = upgrade(manager, ["User.Read", "Mail.ReadWrite"])

        assert isinstance(outcome, ScopeUpgrade)
        assert outcome.manager is not manager
        assert outcome.manager.get_auth_mode() is AuthMode.INTERACTIVE
        assert outcome.auth_provider.credential is outcome.manager.credential
        assert outcome.scopes == ["User.Read", "Mail.ReadWrite"]
        assert outcome.token_status.is_expired is False
        # The old manager is untouched.
        assert manager.credential is old_credential

    def test_sign_in_requests_fully_qualified_scopes(self, library_manager):
        outcome = upgrade(library_manager(AuthMode.INTERACTIVE), ["User.Read", "Mail.ReadWrite"])

        assert outcome.manager.credential.calls == [
            ("https://graph.microsoft.com/User.Read https://graph.microsoft.com/Mail.ReadWrite",)
        ]

    def test_browser_failure_falls_back_to_device_code(self, library_manager, identity):
        manager = library_manager(AuthMode.INTERACTIVE)
        identity.browser_get_token_error = ClientAuthenticationError("browser closed")
        prompt = lambda uri, code, expires: None

        outcome = upgrade(manager, ["User.Read"], prompt_callback=prompt)

        assert isinstance(outcome, ScopeUpgrade)
        assert outcome.manager.credential.kind == "device_code"
        assert outcome.manager.credential.kwargs["prompt_callback"] is prompt

    def test_sign_in_failure_keeps_old_manager(self, library_manager, identity):
        manager = library_manager(AuthMode.INTERACTIVE)
        old_credential = manager.credential
        identity.browser_get_token_error = ClientAuthenticationError("browser closed")
        identity.get_token_error = ClientAuthenticationError("AADSTS70016: authorization pending timed out")

        outcome = upgrade(manager, ["User.Read"])

        assert isinstance(outcome, UpgradeFailure)
        assert outcome.reason == "sign_in_failed"
        assert "AADSTS70016" in outcome.message
        assert manager.credential is old_credential

    def test_no_token_is_a_sign_in_failure(self, library_manager, identity):
        manager = library_manager(AuthMode.INTERACTIVE)
        identity.token = None

        outcome = upgrade(manager, ["User.Read"])

        assert isinstance(outcome, UpgradeFailure)
        assert outcome.reason == "sign_in_failed"
        assert "Failed to acquire access token" in outcome.message
