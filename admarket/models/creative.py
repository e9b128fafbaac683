from sqlalchemy import JSON, ForeignKey, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from admarket.db.base import Base


class Creative(Base):
    __tablename__ = "creatives"

    deal_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("deals.id", ondelete="CASCADE"), nullable=False, index=True
    )
    text: Mapped[str] = mapped_column(Text, nullable=False)
    entities: Mapped[list | None] = mapped_column(JSON, nullable=True)
    # [{"type": "photo" | "video" | "document" | "animation", "file_id": str}, ...]
    media_items: Mapped[list | None] = mapped_column(JSON, nullable=True)
