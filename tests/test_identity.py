"""Tests for the external identity verifier against a mocked JWKS endpoint."""

import json
import time

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from photofilter.config import Settings
from photofilter.service.identity import ExternalIdentityVerifier
from photofilter.service.tokens import VerifyStatus

ISSUER = "https://cognito-idp.ap-southeast-2.amazonaws.com/ap-southeast-2_TestPool"
JWKS_URL = f"{ISSUER}/.well-known/jwks.json"
CLIENT_ID = "test-client-id"


def _new_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def _jwk(private_key, kid: str) -> dict:
    data = json.loads(RSAAlgorithm.to_jwk(private_key.public_key()))
    data.update({"kid": kid, "use": "sig", "alg": "RS256"})
    return data


class JwksServer:
    """httpx MockTransport handler serving a mutable key set."""

    def __init__(self, keys):
        self.keys = list(keys)
        self.calls = 0
        self.fail = False

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls += 1
        assert str(request.url) == JWKS_URL
        if self.fail:
            return httpx.Response(503)
        return httpx.Response(200, json={"keys": self.keys})


class MonotonicClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture(scope="module")
def signing_key():
    return _new_key()


@pytest.fixture
def server(signing_key):
    return JwksServer([_jwk(signing_key, "k1")])


@pytest.fixture
def clock():
    return MonotonicClock()


@pytest.fixture
def verifier(server, clock):
    return ExternalIdentityVerifier(
        issuer=ISSUER,
        jwks_url=JWKS_URL,
        client_id=CLIENT_ID,
        token_use="id",
        min_refresh_seconds=60,
        cache_seconds=3600,
        transport=httpx.MockTransport(server),
        clock=clock,
    )


def _id_token(private_key, *, kid="k1", **overrides) -> str:
    now = int(time.time())
    claims = {
        "sub": "8f1c-external-sub",
        "cognito:username": "alice",
        "email": "alice@example.com",
        "email_verified": True,
        "token_use": "id",
        "aud": CLIENT_ID,
        "iss": ISSUER,
        "iat": now,
        "exp": now + 3600,
    }
    claims.update(overrides)
    return jwt.encode(claims, private_key, algorithm="RS256", headers={"kid": kid})


class TestVerify:
    async def test_valid_id_token(self, verifier, signing_key):
        result = await verifier.verify(_id_token(signing_key))

        assert result.status is VerifyStatus.OK
        assert result.claims["cognito:username"] == "alice"

    async def test_local_hs256_token_is_not_applicable(self, verifier):
        token = jwt.encode({"sub": "x", "iss": "photofilter"}, "secret", algorithm="HS256")

        result = await verifier.verify(token)
        assert result.status is VerifyStatus.NOT_APPLICABLE

    async def test_garbage_is_not_applicable(self, verifier, server):
        result = await verifier.verify("not-a-token")

        assert result.status is VerifyStatus.NOT_APPLICABLE
        assert server.calls == 0

    async def test_foreign_issuer_is_not_applicable(self, verifier, signing_key, server):
        token = _id_token(signing_key, iss="https://issuer.example.com/other")

        result = await verifier.verify(token)
        assert result.status is VerifyStatus.NOT_APPLICABLE
        assert server.calls == 0

    async def test_expired(self, verifier, signing_key):
        past = int(time.time()) - 7200
        token = _id_token(signing_key, iat=past, exp=past + 60)

        assert (await verifier.verify(token)).status is VerifyStatus.EXPIRED

    async def test_wrong_audience_is_invalid(self, verifier, signing_key):
        token = _id_token(signing_key, aud="someone-else")

        assert (await verifier.verify(token)).status is VerifyStatus.INVALID

    async def test_access_token_rejected_when_id_expected(self, verifier, signing_key):
        token = _id_token(signing_key, token_use="access")

        assert (await verifier.verify(token)).status is VerifyStatus.INVALID

    async def test_signature_from_other_key_is_invalid(self, verifier):
        token = _id_token(_new_key())

        assert (await verifier.verify(token)).status is VerifyStatus.INVALID

    async def test_missing_kid_is_invalid(self, verifier, signing_key):
        now = int(time.time())
        token = jwt.encode(
            {"sub": "x", "iss": ISSUER, "aud": CLIENT_ID, "iat": now, "exp": now + 60},
            signing_key,
            algorithm="RS256",
        )

        result = await verifier.verify(token)
        assert result.status is VerifyStatus.INVALID
        assert result.reason == "missing key id"

    async def test_jwks_failure_is_invalid(self, verifier, signing_key, server):
        server.fail = True

        result = await verifier.verify(_id_token(signing_key))
        assert result.status is VerifyStatus.INVALID
        assert result.reason == "signing keys unavailable"


class TestKeyCache:
    async def test_keys_are_cached(self, verifier, signing_key, server):
        await verifier.verify(_id_token(signing_key))
        await verifier.verify(_id_token(signing_key))

        assert server.calls == 1

    async def test_unknown_kid_triggers_refresh_after_rotation(
        self, verifier, signing_key, server, clock
    ):
        await verifier.verify(_id_token(signing_key))
        rotated = _new_key()
        server.keys.append(_jwk(rotated, "k2"))

        clock.now += 61
        result = await verifier.verify(_id_token(rotated, kid="k2"))

        assert result.status is VerifyStatus.OK
        assert server.calls == 2

    async def test_unknown_kid_refresh_is_rate_limited(
        self, verifier, signing_key, server, clock
    ):
        await verifier.verify(_id_token(signing_key))

        clock.now += 5
        first = await verifier.verify(_id_token(signing_key, kid="forged-1"))
        second = await verifier.verify(_id_token(signing_key, kid="forged-2"))

        assert first.status is VerifyStatus.INVALID
        assert second.status is VerifyStatus.INVALID
        assert server.calls == 1

    async def test_stale_cache_survives_failed_refresh(
        self, verifier, signing_key, server, clock
    ):
        await verifier.verify(_id_token(signing_key))
        server.fail = True

        clock.now += 3601
        result = await verifier.verify(_id_token(signing_key))

        assert result.status is VerifyStatus.OK
        assert server.calls == 2


class TestFromSettings:
    def test_unconfigured_returns_none(self, settings):
        assert ExternalIdentityVerifier.from_settings(settings) is None

    def test_pool_id_derives_issuer_and_jwks_url(self, tmp_path):
        settings = Settings(
            jwt_secret="x" * 40,
            shared_fs_root=str(tmp_path),
            identity_pool_id="ap-southeast-2_TestPool",
            identity_client_id=CLIENT_ID,
        )
        verifier = ExternalIdentityVerifier.from_settings(settings)

        assert verifier is not None
        assert verifier.issuer == ISSUER
        assert verifier.jwks_url == JWKS_URL
        assert verifier.client_id == CLIENT_ID
