"""Identity provider subjects and their link to local users.

An external identity is recorded the first time its subject is verified. It may
exist without a user (discovered but unlinked). The two unique indexes enforce
the one-to-one mapping: a subject appears once, and a user owns at most one
identity.
"""

from datetime import datetime
from typing import Optional
from sqlalchemy import DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from kitchen.larder.gate.model.base import Base, guidpk, str512


class ExternalIdentity(Base):
    """A verified identity provider subject mirrored into Larder."""

    __tablename__ = "external_identities"

    guid: Mapped[guidpk]
    subject: Mapped[str512]
    user_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=True
    )
    display_name: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    avatar_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    linked_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )

    __table_args__ = (
        Index("idx_external_identities_subject", "subject", unique=True),
        Index("idx_external_identities_user_id", "user_id", unique=True),
    )

    @property
    def linked(self) -> bool:
        return self.user_id is not None and self.linked_at is not None
