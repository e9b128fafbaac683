from datetime import datetime

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from admarket.db.base import Base


class Deal(Base):
    __tablename__ = "deals"

    deal_number: Mapped[int | None] = mapped_column(Integer, unique=True, nullable=True)
    status: Mapped[str] = mapped_column(
        String(50), default="CREATED", server_default="CREATED", index=True
    )
    advertiser_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    publisher_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    channel_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("channels.id", ondelete="CASCADE"), nullable=False, index=True
    )
    ad_format_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    creative_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("creatives.id", ondelete="SET NULL", use_alter=True),
        nullable=True,
    )

    # Smallest currency unit as a decimal integer string (nanoTON for TON)
    agreed_price: Mapped[str] = mapped_column(String(40), nullable=False)
    currency: Mapped[str] = mapped_column(String(10), default="TON", server_default="TON")
    platform_fee_bps: Mapped[int] = mapped_column(Integer, default=500, server_default="500")

    scheduled_time: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    duration_hours: Mapped[int | None] = mapped_column(
        Integer, default=24, server_default="24", nullable=True
    )
    posting_guarantee_term_hours: Mapped[int | None] = mapped_column(Integer, nullable=True)

    status_history: Mapped[list | None] = mapped_column(JSON, nullable=True)

    escrow_wallet_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    escrow_status: Mapped[str] = mapped_column(
        String(20), default="NONE", server_default="NONE", nullable=False
    )  # NONE / PENDING / HELD / RELEASING / RELEASED / REFUNDING / REFUNDED / PARTIAL_REFUND
    escrow_claimed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    posting_claimed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    posted_message_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    posted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    # "metadata" is reserved on declarative classes
    deal_metadata: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)

    # Relationships
    advertiser = relationship("User", foreign_keys=[advertiser_id], lazy="selectin")
    publisher = relationship("User", foreign_keys=[publisher_id], lazy="selectin")
    channel = relationship("Channel", lazy="selectin")
