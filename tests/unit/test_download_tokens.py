"""Unit tests for signed export download tokens."""

import datetime

import jwt

from app.services.download_tokens import DownloadTokenService


def _now():
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


class TestDownloadTokenService:
    def setup_method(self):
        self.tokens = DownloadTokenService(
            secret_key="test-secret-key-for-unit-tests",
            algorithm="HS256",
            ttl_seconds=3600,
        )

    def test_round_trip_claims(self):
        token, expires = self.tokens.create_token("req-1", "user-1")
        claims = self.tokens.decode_token(token)
        assert claims is not None
        assert claims["sub"] == "user-1"
        assert claims["rid"] == "req-1"
        assert expires > _now()

    def test_expiry_capped_by_not_after(self):
        now = _now()
        not_after = now + datetime.timedelta(minutes=5)
        _, expires = self.tokens.create_token("req-1", "user-1", not_after=not_after, now=now)
        assert expires == not_after

    def test_expiry_defaults_to_ttl(self):
        now = _now()
        not_after = now + datetime.timedelta(days=7)
        _, expires = self.tokens.create_token("req-1", "user-1", not_after=not_after, now=now)
        assert expires == now + datetime.timedelta(seconds=3600)

    def test_decode_expired_token(self):
        past = _now() - datetime.timedelta(hours=2)
        token, _ = self.tokens.create_token("req-1", "user-1", now=past)
        assert self.tokens.decode_token(token) is None

    def test_decode_invalid_signature(self):
        token, _ = self.tokens.create_token("req-1", "user-1")
        other = DownloadTokenService(secret_key="different-secret-key", algorithm="HS256", ttl_seconds=3600)
        assert other.decode_token(token) is None

    def test_decode_wrong_audience(self):
        token = jwt.encode(
            {"sub": "user-1", "rid": "req-1", "aud": "something-else"},
            "test-secret-key-for-unit-tests",
            algorithm="HS256",
        )
        assert self.tokens.decode_token(token) is None

    def test_decode_garbage(self):
        assert self.tokens.decode_token("not-a-jwt") is None
