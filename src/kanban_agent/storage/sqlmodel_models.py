"""SQLModel ORM tables for boards, cards and execution logs."""

from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import Column, Date, DateTime, ForeignKey, Index, Integer, Text
from sqlmodel import Field, SQLModel


class Board(SQLModel, table=True):
    __tablename__ = "boards"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    board_date: date = Field(sa_column=Column(Date, nullable=False, unique=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Card(SQLModel, table=True):
    __tablename__ = "cards"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_cards_board_column", "board_id", "column_name"),)

    id: int | None = Field(default=None, primary_key=True)
    board_id: int = Field(
        sa_column=Column(
            ForeignKey("boards.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    source_id: str | None = None
    source_type: str = Field(default="manual")
    column_name: str = Field(default="inbox", index=True)
    title: str
    body: str | None = Field(default=None, sa_column=Column(Text))
    proposed_action: str | None = Field(default=None, sa_column=Column(Text))
    session_id: str | None = None
    execution_status: str | None = Field(default=None, index=True)
    worktree_path: str | None = None
    branch_name: str | None = None
    execution_result: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ExecutionLog(SQLModel, table=True):
    __tablename__ = "execution_logs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_execution_logs_card_time", "card_id", "created_at", "id"),
        {"sqlite_autoincrement": True},
    )

    id: int | None = Field(default=None, sa_column=Column(Integer, primary_key=True))
    card_id: int = Field(
        sa_column=Column(
            ForeignKey("cards.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    session_id: str | None = None
    step: str = Field(index=True)
    message: str = Field(sa_column=Column(Text, nullable=False))
    data_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
