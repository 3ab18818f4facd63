from __future__ import annotations

import base64
import hashlib
import hmac
from datetime import timedelta

import pytest
from flask_jwt_extended import create_refresh_token

from errors import AuthenticationError, TokenExpiredError
from security import extract_bearer_token, mint_turn_credentials, verify_access_token
from server_init import create_app


class TestExtractBearerToken:
    def test_auth_payload_wins(self):
        assert extract_bearer_token({"token": "a"}, {"Authorization": "Bearer b"}, {"token": "c"}) == "a"

    def test_auth_payload_may_carry_bearer_prefix(self):
        assert extract_bearer_token({"token": "Bearer abc"}) == "abc"

    def test_header_then_query(self):
        assert extract_bearer_token(None, {"Authorization": "Bearer b"}, {"token": "c"}) == "b"
        assert extract_bearer_token(None, {}, {"token": "c"}) == "c"

    def test_non_bearer_scheme_is_ignored(self):
        assert extract_bearer_token(None, {"Authorization": "Basic dXNlcjpwdw=="}) is None

    def test_nothing_supplied(self):
        assert extract_bearer_token(None) is None
        assert extract_bearer_token({"token": "   "}, {}, {}) is None


class TestVerifyAccessToken:
    def test_valid(self, app, token_for, store, users):
        with app.app_context():
            assert verify_access_token(token_for("alice"), store.user_exists) == "alice"

    def test_missing(self, app, store):
        with app.app_context(), pytest.raises(AuthenticationError):
            verify_access_token(None, store.user_exists)

    def test_expired(self, app, token_for, store, users):
        token = token_for("alice", expires_delta=timedelta(seconds=-30))

        with app.app_context(), pytest.raises(TokenExpiredError):
            verify_access_token(token, store.user_exists)

    def test_garbage(self, app, store):
        with app.app_context(), pytest.raises(AuthenticationError) as exc_info:
            verify_access_token("x.y.z", store.user_exists)

        assert not isinstance(exc_info.value, TokenExpiredError)

    def test_unknown_principal(self, app, token_for, store, users):
        with app.app_context(), pytest.raises(AuthenticationError):
            verify_access_token(token_for("mallory"), store.user_exists)

    def test_refresh_token_is_not_accepted(self, app, store, users):
        with app.app_context():
            refresh = create_refresh_token(identity="alice")
            with pytest.raises(AuthenticationError):
                verify_access_token(refresh, store.user_exists)


class TestTurnCredentials:
    def test_coturn_rest_format(self):
        creds = mint_turn_credentials("s3cret", "turn.example.com", "alice", ttl_seconds=3600, now=1_700_000_000)

        assert creds["username"] == "1700003600:alice"
        expected = base64.b64encode(
            hmac.new(b"s3cret", b"1700003600:alice", hashlib.sha1).digest()
        ).decode("ascii")
        assert creds["credential"] == expected
        assert creds["ttl"] == 3600
        assert creds["expiresAt"] == 1_700_003_600
        assert creds["urls"] == [
            "turn:turn.example.com:3478?transport=udp",
            "turn:turn.example.com:3478?transport=tcp",
            "turns:turn.example.com:5349?transport=tcp",
        ]

    def test_default_validity_is_one_day(self):
        creds = mint_turn_credentials("s3cret", "turn.example.com", "alice", now=0)

        assert creds["expiresAt"] == 86400

    @pytest.mark.parametrize("secret, username", [("", "alice"), ("s3cret", "")])
    def test_requires_secret_and_username(self, secret, username):
        with pytest.raises(ValueError):
            mint_turn_credentials(secret, "turn.example.com", username)

    def test_endpoint_uses_caller_identity(self, app, auth_headers, users):
        resp = app.test_client().post("/api/v1/turn/credentials", json={}, headers=auth_headers("bob"))

        assert resp.status_code == 200
        assert resp.get_json()["username"].endswith(":bob")

    def test_endpoint_accepts_explicit_username(self, app, auth_headers, users):
        resp = app.test_client().post(
            "/api/v1/turn/credentials", json={"username": "bob-laptop"}, headers=auth_headers("bob")
        )

        assert resp.get_json()["username"].endswith(":bob-laptop")

    def test_endpoint_unconfigured(self, settings, store, presence, users):
        settings["turn_secret"] = ""
        app, _ = create_app(settings, store=store, presence=presence)
        with app.app_context():
            from flask_jwt_extended import create_access_token

            token = create_access_token(identity="bob")

        resp = app.test_client().post(
            "/api/v1/turn/credentials", json={}, headers={"Authorization": f"Bearer {token}"}
        )

        assert resp.status_code == 503
        assert resp.get_json()["error"] == "turn_not_configured"
