"""ledger payload and active assignment index

Revision ID: b81d4f0c6e27
Revises: 7c2e9b41d0a5
Create Date: 2026-10-18 15:41:22.530917

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'b81d4f0c6e27'
down_revision = '7c2e9b41d0a5'
branch_labels = None
depends_on = None


def upgrade():
    with op.batch_alter_table('processed_events', schema=None) as batch_op:
        batch_op.add_column(sa.Column('payload', sa.Text(), nullable=True))

    with op.batch_alter_table('billing_assignments', schema=None) as batch_op:
        batch_op.create_index(
            'uq_billing_assignment_active',
            ['subscription_id', 'profile_id'],
            unique=True,
            postgresql_where=sa.text('is_active'),
            sqlite_where=sa.text('is_active'),
        )


def downgrade():
    with op.batch_alter_table('billing_assignments', schema=None) as batch_op:
        batch_op.drop_index('uq_billing_assignment_active')

    with op.batch_alter_table('processed_events', schema=None) as batch_op:
        batch_op.drop_column('payload')
