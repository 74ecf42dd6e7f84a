"""Denylist and sync cursor tables.

Revision ID: 001_denylist
Revises:
Create Date: 2026-10-18 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_denylist"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Current denylist status per (address, token, network)
    op.create_table(
        "blacklist",
        sa.Column("address", sa.String(64), nullable=False),
        sa.Column("token", sa.String(16), nullable=False),
        sa.Column("network", sa.String(16), nullable=False),
        sa.Column("is_blacklisted", sa.Boolean(), nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=False),
        sa.Column("log_index", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("transaction_hash", sa.String(80), nullable=False),
        sa.Column("event_timestamp", sa.BigInteger(), nullable=False),
        sa.Column("first_seen", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_updated", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("address", "token", "network"),
    )
    op.create_index("idx_blacklist_network_token", "blacklist", ["network", "token"])
    op.create_index("idx_blacklist_is_blacklisted", "blacklist", ["is_blacklisted"])
    op.create_index("idx_blacklist_last_updated", "blacklist", ["last_updated"])

    # Backfill progress per (network, token)
    op.create_table(
        "sync_cursor",
        sa.Column("network", sa.String(16), nullable=False),
        sa.Column("token", sa.String(16), nullable=False),
        sa.Column("last_synced_position", sa.BigInteger(), nullable=False),
        sa.Column("last_sync_time", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("network", "token"),
    )


def downgrade() -> None:
    op.drop_table("sync_cursor")
    op.drop_index("idx_blacklist_last_updated", table_name="blacklist")
    op.drop_index("idx_blacklist_is_blacklisted", table_name="blacklist")
    op.drop_index("idx_blacklist_network_token", table_name="blacklist")
    op.drop_table("blacklist")
