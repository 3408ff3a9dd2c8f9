from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, CheckConstraint, DateTime, ForeignKey, Index, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JSON_TYPE = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class Turn(Base):
    __tablename__ = "turns"
    __table_args__ = (
        Index("idx_turns_production_created", "production_id", "created_at"),
        CheckConstraint("role in ('user', 'assistant')", name="ck_turns_role"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    production_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    parent_id: Mapped[str | None] = mapped_column(
        ForeignKey("turns.id", ondelete="CASCADE"), index=True
    )
    role: Mapped[str] = mapped_column(String(16), nullable=False)
    assistant_id: Mapped[str | None] = mapped_column(String(64))
    receiving_assistant_id: Mapped[str | None] = mapped_column(String(64))
    sending_persona_id: Mapped[str | None] = mapped_column(String(64))
    sender_name: Mapped[str | None] = mapped_column(Text)
    is_directive: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    content_json: Mapped[dict] = mapped_column(JSON_TYPE, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
