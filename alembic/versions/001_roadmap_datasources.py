"""Roadmap datasources table.

Revision ID: 001_roadmap_datasources
Revises:
Create Date: 2026-10-18

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001_roadmap_datasources"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "roadmap_datasources",
        sa.Column("roadmap_id", sa.String(100), primary_key=True),
        sa.Column("kind", sa.String(32), server_default=sa.text("'tabular'"), nullable=False),
        sa.Column("config_json", sa.Text(), server_default=sa.text("'{}'"), nullable=False),
        sa.Column("encrypted_credential", sa.Text(), nullable=True),
        sa.Column("config_version", sa.Integer(), server_default=sa.text("0"), nullable=False),
        # Snapshot, replaced wholesale by a successful sync
        sa.Column("snapshot_json", sa.Text(), nullable=True),
        sa.Column("snapshot_captured_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("snapshot_truncated", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        # Sync metadata
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_sync_duration_ms", sa.Integer(), nullable=True),
        sa.Column("last_sync_item_count", sa.Integer(), nullable=True),
        sa.Column("last_sync_error", sa.Text(), nullable=True),
        sa.Column("tabular_text", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )


def downgrade() -> None:
    op.drop_table("roadmap_datasources")
