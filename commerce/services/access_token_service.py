"""Access token service — signed magic-link capabilities.

A token binds (email, product_id, entitlement_id) and expires after
ACCESS_TOKEN_TTL_DAYS. It proves who was sent a link, not who is still
allowed: every consumer must re-check the live entitlement, because a
token outlives a refund issued after the email went out.

Tokens are HS256 JWTs (PyJWT) with fixed issuer/audience and type="access".
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import jwt
from flask import current_app

from commerce.errors import ConfigurationError

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
TOKEN_TYPE = "access"


@dataclass(frozen=True)
class AccessTokenClaims:
    email: str
    product_id: str
    entitlement_id: str
    expires_at: datetime


def _signing_key():
    secret = (
        current_app.config.get("ACCESS_TOKEN_SECRET")
        or current_app.config.get("SECRET_KEY")
    )
    if not secret:
        raise ConfigurationError("ACCESS_TOKEN_SECRET or SECRET_KEY must be set")
    return secret


def issue_access_token(email, product_id, entitlement_id, ttl=None):
    """Mint a signed access token. Default lifetime is ACCESS_TOKEN_TTL_DAYS."""
    if ttl is None:
        ttl = timedelta(days=current_app.config.get("ACCESS_TOKEN_TTL_DAYS", 7))

    now = datetime.now(timezone.utc)
    payload = {
        "email": email.lower().strip(),
        "product_id": product_id,
        "entitlement_id": entitlement_id,
        "type": TOKEN_TYPE,
        "iss": current_app.config["ACCESS_TOKEN_ISSUER"],
        "aud": current_app.config["ACCESS_TOKEN_AUDIENCE"],
        "iat": now,
        "exp": now + ttl,
    }
    return jwt.encode(payload, _signing_key(), algorithm=ALGORITHM)


def validate_access_token(token):
    """Verify signature, issuer, audience, type and expiry.

    Returns AccessTokenClaims, or None for any invalid, expired or
    malformed token. Grants nothing by itself.
    """
    if not token:
        return None

    try:
        decoded = jwt.decode(
            token,
            _signing_key(),
            algorithms=[ALGORITHM],
            issuer=current_app.config["ACCESS_TOKEN_ISSUER"],
            audience=current_app.config["ACCESS_TOKEN_AUDIENCE"],
            options={"require": ["exp", "iss", "aud"]},
        )
    except jwt.InvalidTokenError as e:
        logger.info(f"Rejected access token: {e}")
        return None

    if decoded.get("type") != TOKEN_TYPE:
        return None

    try:
        return AccessTokenClaims(
            email=decoded["email"],
            product_id=decoded["product_id"],
            entitlement_id=decoded["entitlement_id"],
            expires_at=datetime.fromtimestamp(decoded["exp"], tz=timezone.utc),
        )
    except KeyError:
        return None


def build_access_link(email, product, entitlement):
    """Magic link for one entitlement: /access/<slug>?token=..."""
    token = issue_access_token(email, product.id, entitlement.id)
    base_url = current_app.config["APP_BASE_URL"].rstrip("/")
    return f"{base_url}/access/{product.slug}?token={token}"
