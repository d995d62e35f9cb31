"""User model.

Identity anchor for payments and subscriptions, keyed by email.
Created lazily the first time a payment references an unseen email;
never deleted here.
"""

import uuid

from payhook.extensions import db


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    email = db.Column(db.String(255), unique=True, nullable=False)  # lower-cased
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    # --- Relationships ---
    subscriptions = db.relationship(
        "Subscription", back_populates="user", lazy="dynamic"
    )
    payments = db.relationship("Payment", back_populates="user", lazy="dynamic")

    def __repr__(self):
        return f"<User {self.email}>"
