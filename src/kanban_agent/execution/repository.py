"""Execution log store and card execution-field persistence."""

from __future__ import annotations

import json
from datetime import date
from pathlib import Path
from typing import Any

from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from kanban_agent.execution.models import (
    CardColumn,
    CardCreate,
    CardView,
    ExecutionLogEntry,
    ExecutionStatus,
    LogStep,
)
from kanban_agent.storage.alembic_runner import upgrade_head
from kanban_agent.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from kanban_agent.storage.sqlmodel_models import Board, Card, ExecutionLog


class CardNotFoundError(RuntimeError):
    """Raised when a card id does not resolve to a stored card."""


class ExecutionRepository:
    """Persistence facade backed by SQLModel + SQLite.

    Log rows are independent inserts, so concurrent attempts never
    read-modify-write the same row. Card execution fields are plain scalar
    updates committed before the call returns.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(
            db_path=db_path,
            busy_timeout_ms=sqlite_busy_timeout_ms,
        )

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # -- execution log -------------------------------------------------

    def append_log(
        self,
        card_id: int,
        step: LogStep | str,
        message: str,
        *,
        session_id: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> ExecutionLogEntry:
        """Append one entry and return it with its assigned id."""

        step_value = step.value if isinstance(step, LogStep) else step
        with Session(self.engine) as session:
            row = ExecutionLog(
                card_id=card_id,
                session_id=session_id,
                step=step_value,
                message=message,
                data_json=json.dumps(data, ensure_ascii=False) if data is not None else None,
                created_at=to_db_datetime(utc_now()),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_log_entry(row)

    def list_logs(self, card_id: int) -> list[ExecutionLogEntry]:
        """Return the card's log in ``(created_at, id)`` order."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(ExecutionLog)
                .where(ExecutionLog.card_id == card_id)
                .order_by(col(ExecutionLog.created_at).asc(), col(ExecutionLog.id).asc()),
            ).all()
        return [_to_log_entry(row) for row in rows]

    def get_log(self, entry_id: int) -> ExecutionLogEntry | None:
        with Session(self.engine) as session:
            row = session.get(ExecutionLog, entry_id)
            return _to_log_entry(row) if row is not None else None

    def clear_logs(self, card_id: int) -> int:
        """Delete the card's log; returns removed row count."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(ExecutionLog).where(col(ExecutionLog.card_id) == card_id),
            )
            session.commit()
            return result.rowcount or 0

    # -- cards ---------------------------------------------------------

    def ensure_board(self, board_date: date | None = None) -> int:
        """Return the board id for a date, creating the board if needed."""

        target = board_date or utc_now().date()
        with Session(self.engine) as session:
            board = session.exec(select(Board).where(Board.board_date == target)).one_or_none()
            if board is None:
                board = Board(board_date=target, created_at=to_db_datetime(utc_now()))
                session.add(board)
                session.commit()
                session.refresh(board)
            assert board.id is not None
            return board.id

    def create_card(self, payload: CardCreate, *, board_date: date | None = None) -> CardView:
        board_id = self.ensure_board(board_date)
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = Card(
                board_id=board_id,
                source_id=payload.source_id,
                source_type=payload.source_type,
                column_name=payload.column_name.value,
                title=payload.title,
                body=payload.body,
                proposed_action=payload.proposed_action,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_card_view(row)

    def get_card(self, card_id: int) -> CardView | None:
        with Session(self.engine) as session:
            row = session.get(Card, card_id)
            return _to_card_view(row) if row is not None else None

    def require_card(self, card_id: int) -> CardView:
        card = self.get_card(card_id)
        if card is None:
            raise CardNotFoundError(f"Card not found: {card_id}")
        return card

    def list_cards(self, *, limit: int = 50) -> list[CardView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Card)
                .order_by(col(Card.created_at).desc(), col(Card.id).desc())
                .limit(limit),
            ).all()
        return [_to_card_view(row) for row in rows]

    def set_session_id(self, card_id: int, session_id: str | None) -> None:
        self._update_card(card_id, session_id=session_id)

    def set_execution_status(self, card_id: int, status: ExecutionStatus) -> None:
        self._update_card(card_id, execution_status=status.value)

    def set_worktree(
        self,
        card_id: int,
        worktree_path: str | None,
        branch_name: str | None,
    ) -> None:
        self._update_card(card_id, worktree_path=worktree_path, branch_name=branch_name)

    def clear_worktree_path(self, card_id: int) -> None:
        self._update_card(card_id, worktree_path=None)

    def set_execution_result(self, card_id: int, result: str) -> None:
        self._update_card(card_id, execution_result=result)

    def move_to_column(self, card_id: int, column: CardColumn) -> None:
        self._update_card(card_id, column_name=column.value)

    def _update_card(self, card_id: int, **values: object) -> None:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Card)
                .where(col(Card.id) == card_id)
                .values(**values, updated_at=to_db_datetime(utc_now())),
            )
            if result.rowcount != 1:
                session.rollback()
                raise CardNotFoundError(f"Card not found: {card_id}")
            session.commit()


def _to_log_entry(row: ExecutionLog) -> ExecutionLogEntry:
    data: dict[str, Any] | None = None
    if row.data_json:
        parsed = json.loads(row.data_json)
        if isinstance(parsed, dict):
            data = parsed
    return ExecutionLogEntry(
        entry_id=row.id or 0,
        card_id=row.card_id,
        session_id=row.session_id,
        step=row.step,
        message=row.message,
        data=data,
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_card_view(row: Card) -> CardView:
    return CardView(
        card_id=row.id or 0,
        board_id=row.board_id,
        title=row.title,
        body=row.body,
        proposed_action=row.proposed_action,
        source_type=row.source_type,
        source_id=row.source_id,
        column_name=CardColumn(row.column_name),
        session_id=row.session_id,
        execution_status=(
            ExecutionStatus(row.execution_status) if row.execution_status is not None else None
        ),
        worktree_path=row.worktree_path,
        branch_name=row.branch_name,
        execution_result=row.execution_result,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
