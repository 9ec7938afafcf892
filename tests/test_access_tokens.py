"""Tests for access token issue/validate."""

from datetime import datetime, timedelta, timezone

import jwt
import pytest

from commerce.errors import ConfigurationError
from commerce.services.access_token_service import (
    build_access_link,
    issue_access_token,
    validate_access_token,
)


def test_round_trip_claims(app):
    token = issue_access_token("Buyer@Example.com", "p1", "ent_1")
    claims = validate_access_token(token)

    assert claims.email == "buyer@example.com"
    assert claims.product_id == "p1"
    assert claims.entitlement_id == "ent_1"
    remaining = claims.expires_at - datetime.now(timezone.utc)
    assert timedelta(days=6, hours=23) < remaining <= timedelta(days=7)


def test_expired_token_is_invalid(app):
    token = issue_access_token("buyer@example.com", "p1", "ent_1", ttl=timedelta(seconds=-1))
    assert validate_access_token(token) is None


def test_tampered_token_is_invalid(app):
    token = issue_access_token("buyer@example.com", "p1", "ent_1")
    head, payload, signature = token.split(".")
    flipped = signature[:-2] + ("AA" if signature[-2:] != "AA" else "BB")
    assert validate_access_token(f"{head}.{payload}.{flipped}") is None


def test_wrong_secret_is_invalid(app):
    now = datetime.now(timezone.utc)
    forged = jwt.encode({
        "email": "buyer@example.com",
        "product_id": "p1",
        "entitlement_id": "ent_1",
        "type": "access",
        "iss": app.config["ACCESS_TOKEN_ISSUER"],
        "aud": app.config["ACCESS_TOKEN_AUDIENCE"],
        "exp": now + timedelta(days=1),
    }, "not-the-secret", algorithm="HS256")
    assert validate_access_token(forged) is None


@pytest.mark.parametrize("overrides", [
    {"type": "session"},
    {"iss": "someone-else"},
    {"aud": "another-audience"},
])
def test_wrong_claims_are_invalid(app, overrides):
    now = datetime.now(timezone.utc)
    payload = {
        "email": "buyer@example.com",
        "product_id": "p1",
        "entitlement_id": "ent_1",
        "type": "access",
        "iss": app.config["ACCESS_TOKEN_ISSUER"],
        "aud": app.config["ACCESS_TOKEN_AUDIENCE"],
        "exp": now + timedelta(days=1),
    }
    payload.update(overrides)
    token = jwt.encode(payload, app.config["ACCESS_TOKEN_SECRET"], algorithm="HS256")
    assert validate_access_token(token) is None


def test_missing_claims_are_invalid(app):
    token = jwt.encode({
        "email": "buyer@example.com",
        "type": "access",
        "iss": app.config["ACCESS_TOKEN_ISSUER"],
        "aud": app.config["ACCESS_TOKEN_AUDIENCE"],
        "exp": datetime.now(timezone.utc) + timedelta(days=1),
    }, app.config["ACCESS_TOKEN_SECRET"], algorithm="HS256")
    assert validate_access_token(token) is None


@pytest.mark.parametrize("garbage", ["", None, "not-a-jwt", "a.b.c"])
def test_garbage_is_invalid(app, garbage):
    assert validate_access_token(garbage) is None


def test_missing_secret_is_configuration_error(app, monkeypatch):
    monkeypatch.setitem(app.config, "ACCESS_TOKEN_SECRET", None)
    monkeypatch.setitem(app.config, "SECRET_KEY", None)
    with pytest.raises(ConfigurationError):
        issue_access_token("buyer@example.com", "p1", "ent_1")


def test_access_link_shape(app, seed_data):
    from commerce.models.product import Product
    from commerce.extensions import db

    product = db.session.get(Product, "p1")

    class _Entitlement:
        id = "ent_1"

    link = build_access_link("buyer@example.com", product, _Entitlement())
    assert link.startswith("http://localhost:5000/access/intro-to-sql?token=")
    token = link.split("token=", 1)[1]
    assert validate_access_token(token).entitlement_id == "ent_1"
