from alembic import op
import sqlalchemy as sa
import os

# revision identifiers, used by Alembic.
revision = '0002_syncing_lease'
down_revision = '0001_initial'
branch_labels = None
depends_on = None


def _schema():
    return os.getenv('DB_SCHEMA')


def upgrade() -> None:
    schema = _schema()
    op.add_column(
        'offline_sync_queue',
        sa.Column('claimed_at', sa.DateTime(timezone=True), nullable=True),
        schema=schema,
    )


def downgrade() -> None:
    schema = _schema()
    with op.batch_alter_table('offline_sync_queue', schema=schema) as batch:
        batch.drop_column('claimed_at')
