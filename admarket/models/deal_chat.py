from datetime import datetime

from sqlalchemy import BigInteger, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from admarket.db.base import Base


class DealChat(Base):
    """Messaging bridge between the two parties of a deal.

    Each party talks to the bot inside a forum topic of their private chat;
    the thread ids are kept so the topics can be finalized on close.
    """

    __tablename__ = "deal_chats"

    deal_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("deals.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    status: Mapped[str] = mapped_column(
        String(10), default="OPEN", server_default="OPEN"
    )  # OPEN / CLOSED
    advertiser_thread_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    publisher_thread_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
