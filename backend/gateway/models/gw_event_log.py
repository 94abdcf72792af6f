from __future__ import annotations

from sqlalchemy import BigInteger, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from gateway.models.base import Base


class GwEventLog(Base):
    """Append-only record of admitted requests, ordered by ``id``."""

    __tablename__ = "gw_event_log"
    __table_args__ = (
        Index("ix_gw_event_expires_at", "expires_at"),
        # AUTOINCREMENT keeps ids monotonic even after the newest rows are swept.
        {"sqlite_autoincrement": True},
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    identity: Mapped[str] = mapped_column(String(64), nullable=False)
    method: Mapped[str] = mapped_column(String(16), nullable=False)
    path: Mapped[str] = mapped_column(String(512), nullable=False)
    request_id: Mapped[str | None] = mapped_column(String(64))
    accepted_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    expires_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
