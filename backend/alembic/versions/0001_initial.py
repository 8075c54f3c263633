"""create key/value metadata table"""

from alembic import op
import sqlalchemy as sa

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "kventry",
        sa.Column("key", sa.String(length=512), primary_key=True, nullable=False),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column("expires_at", sa.BigInteger(), nullable=True),
    )
    op.create_index("ix_kventry_expires_at", "kventry", ["expires_at"])


def downgrade() -> None:
    op.drop_index("ix_kventry_expires_at", table_name="kventry")
    op.drop_table("kventry")
