"""Tests for RS256 id token minting and the published key set."""

import json

import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from agentcanvas.service.errors import ConfigurationError
from agentcanvas.service.id_tokens import IdTokenIssuer, jwk_to_public_key, public_jwk
from agentcanvas.storage.models import OrgClaim, SessionUser

ISSUER = "https://canvas.example.com"
AUDIENCE = "convex"


@pytest.fixture
def issuer(private_jwk_json, clock):
    return IdTokenIssuer(
        private_jwk_json,
        key_id="key-2",
        issuer=ISSUER,
        audience=AUDIENCE,
        ttl_seconds=3600,
        clock=clock,
    )


@pytest.fixture
def user():
    return SessionUser(id="user_01", email="ada@example.com", first_name="Ada", last_name="Lovelace")


class TestIssue:
    def test_claims(self, issuer, user, rsa_private_key, clock):
        token = issuer.issue_id_token(user, [OrgClaim(id="org_01", role="admin")], True)

        claims = jwt.decode(
            token,
            rsa_private_key.public_key(),
            algorithms=["RS256"],
            audience=AUDIENCE,
            options={"verify_exp": False},
        )
        assert claims["sub"] == "user_01"
        assert claims["email"] == "ada@example.com"
        assert claims["email_verified"] is True
        assert claims["name"] == "Ada Lovelace"
        assert claims["orgs"] == [{"id": "org_01", "role": "admin"}]
        assert claims["isSuperAdmin"] is True
        assert claims["iss"] == ISSUER
        assert claims["exp"] - claims["iat"] == 3600
        assert claims["iat"] == int(clock.now)
        assert "picture" not in claims

    def test_header_names_published_key(self, issuer, user):
        header = jwt.get_unverified_header(issuer.issue_id_token(user))

        assert header["alg"] == "RS256"
        assert header["kid"] == "key-2"
        assert header["kid"] in [k["kid"] for k in issuer.jwks()["keys"]]

    def test_verify_round_trip(self, private_jwk_json, user):
        live = IdTokenIssuer(private_jwk_json, key_id="key-2", issuer=ISSUER, audience=AUDIENCE)

        claims = live.verify(live.issue_id_token(user))

        assert claims["sub"] == "user_01"

    def test_verify_rejects_unknown_kid(self, private_jwk_json, rsa_private_key, user):
        live = IdTokenIssuer(private_jwk_json, key_id="key-2", issuer=ISSUER, audience=AUDIENCE)
        foreign = jwt.encode(
            {"sub": "x", "aud": AUDIENCE, "iss": ISSUER},
            rsa_private_key,
            algorithm="RS256",
            headers={"kid": "nope"},
        )

        with pytest.raises(jwt.PyJWTError):
            live.verify(foreign)


class TestJwks:
    def test_public_members_only(self, issuer):
        (key,) = issuer.jwks()["keys"]

        assert set(key) == {"kty", "use", "alg", "kid", "n", "e"}
        assert key["kid"] == "key-2"

    def test_published_key_matches_signing_key(self, issuer, rsa_private_key):
        (key,) = issuer.jwks()["keys"]
        assert (
            jwk_to_public_key(key).public_numbers()
            == rsa_private_key.public_key().public_numbers()
        )

    def test_retired_keys_stay_published(self, private_jwk_json, clock):
        retired_private = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        retired_full = json.loads(RSAAlgorithm.to_jwk(retired_private))
        retired_full["kid"] = "key-1"

        issuer = IdTokenIssuer(
            private_jwk_json,
            key_id="key-2",
            issuer=ISSUER,
            audience=AUDIENCE,
            retired_public_keys=json.dumps({"keys": [retired_full]}),
            clock=clock,
        )

        keys = {k["kid"]: k for k in issuer.jwks()["keys"]}
        assert set(keys) == {"key-1", "key-2"}
        # Private members of a pasted private JWK are never republished
        assert "d" not in keys["key-1"]
        assert keys["key-1"] == public_jwk(retired_private.public_key(), "key-1")


class TestConfiguration:
    @pytest.mark.parametrize("raw", [None, "", "not json", '{"kty": "RSA"}'])
    def test_invalid_private_key(self, raw):
        with pytest.raises(ConfigurationError):
            IdTokenIssuer(raw, key_id="k", issuer=ISSUER, audience=AUDIENCE)

    def test_public_jwk_is_not_enough(self, rsa_private_key):
        public_only = RSAAlgorithm.to_jwk(rsa_private_key.public_key())
        with pytest.raises(ConfigurationError):
            IdTokenIssuer(public_only, key_id="k", issuer=ISSUER, audience=AUDIENCE)

    def test_malformed_retired_keys(self, private_jwk_json):
        with pytest.raises(ConfigurationError):
            IdTokenIssuer(
                private_jwk_json,
                key_id="k",
                issuer=ISSUER,
                audience=AUDIENCE,
                retired_public_keys="[not json",
            )
