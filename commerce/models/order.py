"""Order models.

- Order: one purchase transaction, keyed by the Stripe checkout session
  (business-level dedup) and the payment intent (refund correlation).
- OrderItem: line item snapshot (product name + amount at time of sale).
  Immutable once created.

Order status is independent of entitlement state; fulfillment moves both
inside one transaction.
"""

import uuid

from commerce.extensions import db


class Order(db.Model):
    __tablename__ = "orders"

    # -- Valid statuses --
    PENDING = "pending"
    COMPLETED = "completed"
    REFUNDED = "refunded"
    FAILED = "failed"
    STATUSES = [PENDING, COMPLETED, REFUNDED, FAILED]

    __table_args__ = (
        db.CheckConstraint(
            "status IN ({})".format(", ".join(f"'{s}'" for s in STATUSES)),
            name="ck_orders_status",
        ),
    )

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    stripe_session_id = db.Column(
        db.String(255), unique=True, nullable=True
    )  # e.g. "cs_test_..."
    stripe_payment_intent_id = db.Column(
        db.String(255), unique=True, nullable=True
    )  # e.g. "pi_..." — refunds are reported against this
    buyer_email = db.Column(db.String(255), nullable=False)
    buyer_name = db.Column(db.String(255), nullable=True)
    buyer_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=True
    )  # null until the purchase is linked to an account
    total_amount = db.Column(db.Integer, nullable=False, default=0)  # cents
    currency = db.Column(db.String(3), nullable=False, default="USD")
    status = db.Column(
        db.String(20), nullable=False, default=PENDING
    )  # pending | completed | refunded | failed
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    fulfilled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    refunded_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # --- Relationships ---
    items = db.relationship(
        "OrderItem", back_populates="order", cascade="all, delete-orphan"
    )
    entitlements = db.relationship("Entitlement", back_populates="order")
    buyer = db.relationship("User")

    def __repr__(self):
        return f"<Order {self.id} ({self.status})>"


class OrderItem(db.Model):
    __tablename__ = "order_items"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    order_id = db.Column(
        db.String(36), db.ForeignKey("orders.id"), nullable=False, index=True
    )
    product_id = db.Column(
        db.String(36), db.ForeignKey("products.id"), nullable=False
    )
    product_name = db.Column(db.String(255), nullable=False)  # snapshot
    amount = db.Column(db.Integer, nullable=False)  # cents
    currency = db.Column(db.String(3), nullable=False, default="USD")
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    # --- Relationships ---
    order = db.relationship("Order", back_populates="items")
    product = db.relationship("Product")

    def __repr__(self):
        return f"<OrderItem {self.product_name} {self.amount}>"
