"""Error taxonomy for webhook ingestion and product access.

- AuthenticationFailure: webhook signature missing or invalid (fail closed).
- TransientProcessingError: fulfillment hit an operational failure; the
  ledger row stays unprocessed and the gateway is asked to retry.
- DataIntegrityError: the event references a product/order/buyer that
  cannot be resolved. Recorded and dead-lettered, never auto-retried.
- AccessDenied: capability failure on an access link or download. Carries
  a machine-readable reason code for the client.
- ConfigurationError: the service is missing a secret it needs to run.
"""


class CommerceError(Exception):
    """Base class for all domain errors."""


class AuthenticationFailure(CommerceError):
    pass


class TransientProcessingError(CommerceError):
    pass


class DataIntegrityError(CommerceError):
    pass


class ConfigurationError(CommerceError):
    pass


class AccessDenied(CommerceError):
    """Denied access to a product.

    `reason` is one of the reason codes below; `detail` is the
    human-readable message shown to the buyer.
    """

    MISSING_TOKEN = "missing_token"
    INVALID_TOKEN = "invalid_token"
    PRODUCT_NOT_FOUND = "product_not_found"
    TOKEN_MISMATCH = "token_mismatch"
    ENTITLEMENT_NOT_FOUND = "entitlement_not_found"
    ENTITLEMENT_REVOKED = "entitlement_revoked"
    ENTITLEMENT_EXPIRED = "entitlement_expired"
    NO_ENTITLEMENT = "no_entitlement"

    STATUS_CODES = {
        MISSING_TOKEN: 401,
        INVALID_TOKEN: 401,
        PRODUCT_NOT_FOUND: 404,
        TOKEN_MISMATCH: 403,
        ENTITLEMENT_NOT_FOUND: 403,
        ENTITLEMENT_REVOKED: 403,
        ENTITLEMENT_EXPIRED: 403,
        NO_ENTITLEMENT: 403,
    }

    def __init__(self, reason, detail=None):
        super().__init__(detail or reason)
        self.reason = reason
        self.detail = detail or reason

    @property
    def status_code(self):
        return self.STATUS_CODES.get(self.reason, 403)

    def to_dict(self):
        return {"error": self.detail, "reason": self.reason}
