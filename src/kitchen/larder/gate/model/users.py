"""Local user accounts.

Users are created either by email sign-up or on the first federated login of an
identity provider subject that is not yet linked to anyone.
"""

from datetime import datetime
from typing import Optional
from sqlalchemy import DateTime, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from kitchen.larder.gate.model.base import Base, str64

EMAIL_PROVIDER = "email"


class User(Base):
    """A local Larder account.

    `password_hash` is empty for accounts provisioned by a federated login;
    those accounts can only sign in through the identity provider.

    Only a sha256 digest of the pending confirmation token is stored.
    """

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    password_hash: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    name: Mapped[str] = mapped_column(String(50), nullable=False)
    provider: Mapped[str64] = mapped_column(default=EMAIL_PROVIDER)
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    confirmation_token_digest: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True
    )
    confirmation_sent_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )

    __table_args__ = (
        Index("idx_users_email", "email", unique=True),
        Index(
            "idx_users_confirmation_token_digest",
            "confirmation_token_digest",
            unique=True,
        ),
    )

    @property
    def confirmed(self) -> bool:
        return self.confirmed_at is not None
