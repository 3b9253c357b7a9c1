"""subscriptions: ended subscription id and scheduled downgrade tracking

Revision ID: 002
Revises: 001
Create Date: 2026-10-17

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '002'
down_revision = '001'
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column('subscriptions', sa.Column('ended_subscription_id', sa.String(length=255), nullable=True))
    op.create_index(
        op.f('ix_subscriptions_ended_subscription_id'),
        'subscriptions',
        ['ended_subscription_id'],
        unique=False,
    )

    op.add_column('subscriptions', sa.Column('scheduled_plan_id', sa.String(length=50), nullable=True))
    op.add_column('subscriptions', sa.Column('scheduled_billing_cycle', sa.String(length=20), nullable=True))
    op.add_column('subscriptions', sa.Column('scheduled_change_date', sa.DateTime(), nullable=True))
    op.add_column('subscriptions', sa.Column('stripe_schedule_id', sa.String(length=255), nullable=True))


def downgrade() -> None:
    op.drop_column('subscriptions', 'stripe_schedule_id')
    op.drop_column('subscriptions', 'scheduled_change_date')
    op.drop_column('subscriptions', 'scheduled_billing_cycle')
    op.drop_column('subscriptions', 'scheduled_plan_id')

    op.drop_index(op.f('ix_subscriptions_ended_subscription_id'), table_name='subscriptions')
    op.drop_column('subscriptions', 'ended_subscription_id')
