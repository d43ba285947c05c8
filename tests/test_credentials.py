"""
Unit tests for the client-provided token credential (graph_bridge/credentials.py).

These tests pin down the lifecycle of a caller-supplied token:

1. Construction without a token is indistinguishable from an expired token
2. Construction with a token honours the given (or default) expiry
3. update_token() replaces token and expiry in place, keeping no history
4. inspect_token() reports claims for status output without verifying anything
"""

import datetime
import logging

import pytest

from graph_bridge import credentials
from graph_bridge.credentials import EPOCH, ClientProvidedTokenCredential, inspect_token

from helpers import in_hours


class TestClientProvidedTokenCredential:
    """Tests for ClientProvidedTokenCredential."""

    # ----- No initial token -----

    def test_without_token_is_expired_immediately(self):
        """No token means the epoch sentinel: expired, and get_token returns None."""
        credential = ClientProvidedTokenCredential()

        assert credential.is_expired() is True
        assert credential.get_token("https://graph.microsoft.com/.default") is None
        assert credential.get_expiration_time() == EPOCH

    def test_empty_string_token_counts_as_absent(self):
        credential = ClientProvidedTokenCredential("")

        assert credential.access_token is None
        assert credential.is_expired() is True

    def test_null_path_logs_an_error(self, caplog):
        """The null result is observable in the logs, but the return value is the signal."""
        credential = ClientProvidedTokenCredential()

        with caplog.at_level(logging.ERROR, logger="graph-bridge.credentials"):
            assert credential.get_token() is None

        assert any(r.levelno == logging.ERROR for r in caplog.records)

    # ----- With a token -----

    def test_returns_token_with_configured_expiry(self):
        expires_on = in_hours(1)
        credential = ClientProvidedTokenCredential("abc", expires_on)

        token = credential.get_token("any-scope")

        assert token is not None
        assert token.token == "abc"
        assert token.expires_on == int(expires_on.timestamp())
        assert credential.is_expired() is False

    def test_scopes_are_ignored(self):
        credential = ClientProvidedTokenCredential("abc", in_hours(1))

        graph = credential.get_token("https://graph.microsoft.com/.default")
        arm = credential.get_token("https://management.azure.com/.default")

        assert graph.token == arm.token == "abc"

    def test_default_expiry_is_one_hour(self):
        before = datetime.datetime.now(datetime.timezone.utc)
        credential = ClientProvidedTokenCredential("abc")
        after = datetime.datetime.now(datetime.timezone.utc)

        expiry = credential.get_expiration_time()
        assert before + datetime.timedelta(hours=1) <= expiry <= after + datetime.timedelta(hours=1)

    def test_default_lifetime_is_configurable(self):
        before = datetime.datetime.now(datetime.timezone.utc)
        credential = ClientProvidedTokenCredential("abc", default_lifetime=datetime.timedelta(minutes=5))

        expiry = credential.get_expiration_time()
        assert expiry - before < datetime.timedelta(minutes=6)
        assert expiry - before >= datetime.timedelta(minutes=5)

    def test_naive_expiry_is_treated_as_utc(self):
        naive = datetime.datetime(2099, 1, 1, 12, 0, 0)
        credential = ClientProvidedTokenCredential("abc", naive)

        assert credential.get_expiration_time() == naive.replace(tzinfo=datetime.timezone.utc)

    # ----- Expiry -----

    def test_past_expiry_returns_none(self):
        credential = ClientProvidedTokenCredential("abc", in_hours(-1))

        assert credential.is_expired() is True
        assert credential.get_token() is None

    def test_token_stops_working_once_clock_passes_expiry(self, monkeypatch):
        """Advance the clock past the expiry instead of waiting for it."""
        expires_on = in_hours(1)
        credential = ClientProvidedTokenCredential("abc", expires_on)
        assert credential.get_token() is not None

        monkeypatch.setattr(credentials, "_utcnow", lambda: expires_on + datetime.timedelta(seconds=1))

        assert credential.get_token() is None
        assert credential.is_expired() is True

    def test_expiry_boundary_counts_as_expired(self, monkeypatch):
        expires_on = in_hours(1)
        credential = ClientProvidedTokenCredential("abc", expires_on)

        monkeypatch.setattr(credentials, "_utcnow", lambda: expires_on)

        assert credential.is_expired() is True

    # ----- update_token -----

    def test_update_replaces_token_and_expiry(self):
        credential = ClientProvidedTokenCredential("t1", in_hours(1))
        e2 = in_hours(2)

        credential.update_token("t2", e2)
        token = credential.get_token()

        assert token.token == "t2"
        assert token.expires_on == int(e2.timestamp())

    def test_update_revives_credential_created_without_token(self):
        credential = ClientProvidedTokenCredential()

        credential.update_token("fresh")

        assert credential.is_expired() is False
        assert credential.get_token().token == "fresh"

    def test_update_without_expiry_applies_default_lifetime(self):
        credential = ClientProvidedTokenCredential("t1", in_hours(5))

        credential.update_token("t2")

        remaining = credential.get_expiration_time() - datetime.datetime.now(datetime.timezone.utc)
        assert datetime.timedelta(minutes=59) < remaining <= datetime.timedelta(hours=1)

    def test_update_does_not_validate_freshness(self):
        """The caller attests validity; an already-expired update is stored as given."""
        credential = ClientProvidedTokenCredential("t1", in_hours(1))

        credential.update_token("stale", in_hours(-1))

        assert credential.access_token == "stale"
        assert credential.get_token() is None


class TestInspectToken:
    """Tests for inspect_token()."""

    def test_delegated_scopes_are_split(self, make_jwt):
        claims = inspect_token(make_jwt(scopes=["User.Read", "Mail.ReadWrite"]))

        assert claims.scopes == ["User.Read", "Mail.ReadWrite"]
        assert claims.audience == "https://graph.microsoft.com"

    def test_app_roles_are_reported(self, make_jwt):
        claims = inspect_token(make_jwt(roles=["Directory.Read.All"]))

        assert claims.scopes == ["Directory.Read.All"]

    def test_expired_token_is_still_inspected(self, make_jwt):
        claims = inspect_token(make_jwt(scopes=["User.Read"], exp_hours=-2))

        assert claims.scopes == ["User.Read"]
        assert claims.expires_on < datetime.datetime.now(datetime.timezone.utc)

    @pytest.mark.parametrize("opaque", ["EwBwA8l6BAAU-opaque-token", "", "a.b.c"])
    def test_opaque_token_yields_empty_claims(self, opaque):
        claims = inspect_token(opaque)

        assert claims.scopes == []
        assert claims.audience is None
        assert claims.expires_on is None
