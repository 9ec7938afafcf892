# Models package — import all models here so Alembic can discover them.

from commerce.models.user import User  # noqa: F401
from commerce.models.product import Product  # noqa: F401
from commerce.models.order import Order, OrderItem  # noqa: F401
from commerce.models.entitlement import Entitlement  # noqa: F401
from commerce.models.stripe_event import StripeEvent  # noqa: F401
from commerce.models.audit import AuditEvent  # noqa: F401
