"""create video_assets and detected_surfaces tables

Revision ID: 5c1e9a7d2b40
Revises:
Create Date: 2026-10-19

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "5c1e9a7d2b40"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "video_assets",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("title", sa.String(500), nullable=False, server_default=""),
        sa.Column("source_ref", sa.Text(), nullable=False),  # local path or URL
        sa.Column("duration_seconds", sa.Float(), nullable=True),
        sa.Column("status", sa.String(50), nullable=False, server_default="Pending Scan"),
        sa.Column("priority_score", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_video_status_priority",
        "video_assets",
        ["status", "priority_score"],
        unique=False,
    )

    op.create_table(
        "detected_surfaces",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("video_id", sa.Integer(), nullable=False),
        sa.Column("timestamp", sa.Float(), nullable=False),
        sa.Column("surface_type", sa.String(100), nullable=False),
        sa.Column("confidence", sa.Float(), nullable=False),
        sa.Column("bounding_box_x", sa.Float(), nullable=False),
        sa.Column("bounding_box_y", sa.Float(), nullable=False),
        sa.Column("bounding_box_width", sa.Float(), nullable=False),
        sa.Column("bounding_box_height", sa.Float(), nullable=False),
        sa.Column("frame_url", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["video_id"], ["video_assets.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_surface_video_timestamp",
        "detected_surfaces",
        ["video_id", "timestamp"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_surface_video_timestamp", table_name="detected_surfaces")
    op.drop_table("detected_surfaces")
    op.drop_index("ix_video_status_priority", table_name="video_assets")
    op.drop_table("video_assets")
