from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import DateTime, Enum, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.sqlite import JSON
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _generate_uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Declarative base for spreadsheet metadata models."""


class ChatRole(str, enum.Enum):
    USER = "user"
    ASSISTANT = "assistant"


class Spreadsheet(Base):
    __tablename__ = "spreadsheets"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    name: Mapped[str] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    sheets: Mapped[list["Sheet"]] = relationship(
        back_populates="spreadsheet",
        cascade="all, delete-orphan",
        order_by="Sheet.created_at",
    )
    messages: Mapped[list["ChatMessage"]] = relationship(
        back_populates="spreadsheet",
        cascade="all, delete-orphan",
        order_by="ChatMessage.created_at",
    )


class Sheet(Base):
    __tablename__ = "sheets"
    __table_args__ = (UniqueConstraint("spreadsheet_id", "name", name="uq_sheet_name"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    spreadsheet_id: Mapped[str] = mapped_column(
        ForeignKey("spreadsheets.id", ondelete="CASCADE"), index=True
    )
    name: Mapped[str] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    spreadsheet: Mapped[Spreadsheet] = relationship(back_populates="sheets")
    columns: Mapped[list["SheetColumn"]] = relationship(
        back_populates="sheet",
        cascade="all, delete-orphan",
        order_by="SheetColumn.column_index",
    )


class SheetColumn(Base):
    __tablename__ = "sheet_columns"
    __table_args__ = (UniqueConstraint("sheet_id", "sql_name", name="uq_sheet_column_sql_name"),)

    sheet_id: Mapped[str] = mapped_column(
        ForeignKey("sheets.id", ondelete="CASCADE"), primary_key=True
    )
    column_index: Mapped[int] = mapped_column(Integer, primary_key=True)
    header: Mapped[str] = mapped_column(Text)
    sql_name: Mapped[str] = mapped_column(String(255))

    sheet: Mapped[Sheet] = relationship(back_populates="columns")


class ChatMessage(Base):
    __tablename__ = "chat_messages"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    spreadsheet_id: Mapped[str] = mapped_column(
        ForeignKey("spreadsheets.id", ondelete="CASCADE"), index=True
    )
    role: Mapped[ChatRole] = mapped_column(
        Enum(
            ChatRole,
            name="chat_role",
            values_callable=lambda roles: [role.value for role in roles],
            create_constraint=True,
        )
    )
    content: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    context_range: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    tool_calls: Mapped[Optional[list[dict[str, Any]]]] = mapped_column(JSON, nullable=True)

    spreadsheet: Mapped[Spreadsheet] = relationship(back_populates="messages")
