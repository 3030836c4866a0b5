"""SQLAlchemy model for pending authorization transactions."""

from datetime import datetime

from sqlalchemy import DateTime, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from broker.db.base import BaseEntity


class PendingAuthorizationEntity(BaseEntity):
    """Sealed pending-authorization bundle, keyed by SHA-256 of the transaction id."""

    __tablename__ = "pending_authorizations"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
