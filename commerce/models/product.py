"""Product model.

A purchasable digital good. `download_manifest` is the list of files the
content layer serves once access is granted: [{"name": ..., "url": ...}].
"""

import uuid

from commerce.extensions import db


class Product(db.Model):
    __tablename__ = "products"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    slug = db.Column(db.String(255), unique=True, nullable=False)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    format = db.Column(db.String(50), nullable=True)  # e.g. "PDF"
    price_cents = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="USD")
    published = db.Column(db.Boolean, default=True)
    download_manifest = db.Column(db.JSON, default=list)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def manifest(self):
        """Download manifest returned to a buyer with live access."""
        return {
            "product_id": self.id,
            "slug": self.slug,
            "title": self.title,
            "format": self.format,
            "files": list(self.download_manifest or []),
        }

    def __repr__(self):
        return f"<Product {self.slug}>"
