"""Revoked session token identifiers.

Each row closes one session token (by jti) until that token would have expired
anyway. Rows past `expires_at` carry no information and are swept periodically.
"""

from datetime import datetime
from sqlalchemy import DateTime, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from kitchen.larder.gate.model.base import Base


class RevokedToken(Base):
    __tablename__ = "session_token_denylist"

    jti: Mapped[str] = mapped_column(String(64), primary_key=True)
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )

    __table_args__ = (
        Index("idx_session_token_denylist_expires_at", "expires_at"),
    )
