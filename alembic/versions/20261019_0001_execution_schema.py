"""Boards, cards and append-only execution logs."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "boards",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("board_date", sa.Date(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("board_date", name="uq_boards_board_date"),
    )

    op.create_table(
        "cards",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("board_id", sa.Integer(), nullable=False),
        sa.Column("source_id", sa.String(), nullable=True),
        sa.Column("source_type", sa.String(), nullable=False, server_default="manual"),
        sa.Column("column_name", sa.String(), nullable=False, server_default="inbox"),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("body", sa.Text(), nullable=True),
        sa.Column("proposed_action", sa.Text(), nullable=True),
        sa.Column("session_id", sa.String(), nullable=True),
        sa.Column("execution_status", sa.String(), nullable=True),
        sa.Column("worktree_path", sa.String(), nullable=True),
        sa.Column("branch_name", sa.String(), nullable=True),
        sa.Column("execution_result", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["board_id"], ["boards.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_cards_board_id", "cards", ["board_id"], unique=False)
    op.create_index("ix_cards_column_name", "cards", ["column_name"], unique=False)
    op.create_index("ix_cards_execution_status", "cards", ["execution_status"], unique=False)
    op.create_index(
        "idx_cards_board_column",
        "cards",
        ["board_id", "column_name"],
        unique=False,
    )

    op.create_table(
        "execution_logs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("card_id", sa.Integer(), nullable=False),
        sa.Column("session_id", sa.String(), nullable=True),
        sa.Column("step", sa.String(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("data_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["card_id"], ["cards.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_execution_logs_card_id", "execution_logs", ["card_id"], unique=False)
    op.create_index("ix_execution_logs_step", "execution_logs", ["step"], unique=False)
    op.create_index(
        "idx_execution_logs_card_time",
        "execution_logs",
        ["card_id", "created_at", "id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_execution_logs_card_time", table_name="execution_logs")
    op.drop_index("ix_execution_logs_step", table_name="execution_logs")
    op.drop_index("ix_execution_logs_card_id", table_name="execution_logs")
    op.drop_table("execution_logs")
    op.drop_index("idx_cards_board_column", table_name="cards")
    op.drop_index("ix_cards_execution_status", table_name="cards")
    op.drop_index("ix_cards_column_name", table_name="cards")
    op.drop_index("ix_cards_board_id", table_name="cards")
    op.drop_table("cards")
    op.drop_table("boards")
