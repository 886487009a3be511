"""create billing schema

Revision ID: 3c1f8a92d7b5
Revises:
Create Date: 2026-10-19 09:12:41.503218

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '3c1f8a92d7b5'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        'users',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('full_name', sa.String(length=255), nullable=True),
        sa.Column('deleted_at', sa.DateTime(), nullable=True,
                  comment='Soft delete; NULL = conta ativa'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_users_email'), 'users', ['email'], unique=True)
    op.create_index(op.f('ix_users_id'), 'users', ['id'], unique=False)

    op.create_table(
        'subscription_plans',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('plan_name', sa.String(length=100), nullable=False),
        sa.Column('monthly_price', sa.Integer(), nullable=False, comment='Price in KRW'),
        sa.Column('daily_rx_limit', sa.Integer(), nullable=True,
                  comment='Prescriptions per day; NULL (or >= 999999) = unlimited'),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('sort_order', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('plan_name'),
    )
    op.create_index(op.f('ix_subscription_plans_id'), 'subscription_plans', ['id'], unique=False)

    op.create_table(
        'subscription_promotions',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('promotion_code', sa.String(length=50), nullable=False),
        sa.Column('promotion_name', sa.String(length=100), nullable=False),
        sa.Column('discount_type', sa.String(length=20), nullable=False,
                  comment='free|percent|amount'),
        sa.Column('discount_value', sa.Integer(), nullable=False,
                  comment='% (percent) ou KRW (amount)'),
        sa.Column('duration_months', sa.Integer(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_subscription_promotions_id'), 'subscription_promotions', ['id'], unique=False)
    op.create_index(op.f('ix_subscription_promotions_promotion_code'), 'subscription_promotions',
                    ['promotion_code'], unique=True)

    op.create_table(
        'payment_methods',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('user_id', sa.UUID(), nullable=False),
        sa.Column('billing_key', sa.String(length=255), nullable=False),
        sa.Column('card_company', sa.String(length=50), nullable=True),
        sa.Column('card_last4', sa.String(length=4), nullable=True),
        sa.Column('is_default', sa.Boolean(), nullable=False),
        sa.Column('disabled_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='RESTRICT'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_payment_methods_id'), 'payment_methods', ['id'], unique=False)
    op.create_index(op.f('ix_payment_methods_user_id'), 'payment_methods', ['user_id'], unique=False)

    op.create_table(
        'user_subscriptions',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('user_id', sa.UUID(), nullable=False),
        sa.Column('entry_plan_id', sa.UUID(), nullable=False,
                  comment='Plano escolhido no cadastro (nunca muda)'),
        sa.Column('billing_plan_id', sa.UUID(), nullable=False,
                  comment='Plano cobrado atualmente (muda conforme o uso)'),
        sa.Column('status', sa.String(length=20), nullable=False,
                  comment='active|payment_failed|restricted|suspended|cancelled'),
        sa.Column('current_period_start', sa.DateTime(), nullable=True),
        sa.Column('current_period_end', sa.DateTime(), nullable=True),
        sa.Column('next_billing_at', sa.DateTime(), nullable=True),
        sa.Column('is_first_billing', sa.Boolean(), nullable=False),
        sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('promotion_id', sa.UUID(), nullable=True),
        sa.Column('promotion_applied_at', sa.DateTime(), nullable=True),
        sa.Column('promotion_expires_at', sa.DateTime(), nullable=True),
        sa.Column('failed_at', sa.DateTime(), nullable=True),
        sa.Column('grace_until', sa.DateTime(), nullable=True),
        sa.Column('payment_method_id', sa.UUID(), nullable=True),
        sa.Column('customer_key', sa.String(length=255), nullable=False, comment='Toss customerKey'),
        sa.Column('processing_run_id', sa.UUID(), nullable=True,
                  comment='BillingRun que esta processando'),
        sa.Column('processing_started_at', sa.DateTime(), nullable=True),
        sa.Column('last_billing_run_id', sa.UUID(), nullable=True),
        sa.Column('reconciliation_required', sa.Boolean(), server_default=sa.text('false'), nullable=False,
                  comment='True = cobrado mas estado nao gravado; exige conciliacao manual'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='RESTRICT'),
        sa.ForeignKeyConstraint(['entry_plan_id'], ['subscription_plans.id'], ondelete='RESTRICT'),
        sa.ForeignKeyConstraint(['billing_plan_id'], ['subscription_plans.id'], ondelete='RESTRICT'),
        sa.ForeignKeyConstraint(['promotion_id'], ['subscription_promotions.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['payment_method_id'], ['payment_methods.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_user_subscriptions_id'), 'user_subscriptions', ['id'], unique=False)
    op.create_index(op.f('ix_user_subscriptions_user_id'), 'user_subscriptions', ['user_id'], unique=False)
    op.create_index(op.f('ix_user_subscriptions_status'), 'user_subscriptions', ['status'], unique=False)
    op.create_index(op.f('ix_user_subscriptions_current_period_end'), 'user_subscriptions',
                    ['current_period_end'], unique=False)
    op.create_index(op.f('ix_user_subscriptions_next_billing_at'), 'user_subscriptions',
                    ['next_billing_at'], unique=False)
    op.create_index(op.f('ix_user_subscriptions_grace_until'), 'user_subscriptions',
                    ['grace_until'], unique=False)

    op.create_table(
        'pending_user_promotions',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('user_id', sa.UUID(), nullable=False),
        sa.Column('promotion_id', sa.UUID(), nullable=False),
        sa.Column('subscription_id', sa.UUID(), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False, comment='pending|applied|revoked'),
        sa.Column('granted_at', sa.DateTime(), nullable=False),
        sa.Column('applied_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['promotion_id'], ['subscription_promotions.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['subscription_id'], ['user_subscriptions.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_pending_user_promotions_id'), 'pending_user_promotions', ['id'], unique=False)
    op.create_index(op.f('ix_pending_user_promotions_user_id'), 'pending_user_promotions',
                    ['user_id'], unique=False)
    op.create_index(op.f('ix_pending_user_promotions_status'), 'pending_user_promotions',
                    ['status'], unique=False)

    op.create_table(
        'billing_payments',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('subscription_id', sa.UUID(), nullable=False),
        sa.Column('user_id', sa.UUID(), nullable=False),
        sa.Column('plan_id', sa.UUID(), nullable=True),
        sa.Column('payment_method_id', sa.UUID(), nullable=True),
        sa.Column('billing_run_id', sa.UUID(), nullable=True),
        sa.Column('order_id', sa.String(length=100), nullable=False),
        sa.Column('payment_key', sa.String(length=255), nullable=True,
                  comment='Toss paymentKey ou FREE_<orderId>'),
        sa.Column('billing_key', sa.String(length=255), nullable=True),
        sa.Column('amount', sa.Integer(), nullable=False, comment='KRW; 0 para periodos gratuitos'),
        sa.Column('is_free', sa.Boolean(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, comment='success|failed'),
        sa.Column('fail_code', sa.String(length=100), nullable=True),
        sa.Column('fail_reason', sa.Text(), nullable=True, comment='Mensagem do gateway, verbatim'),
        sa.Column('requested_at', sa.DateTime(), nullable=False),
        sa.Column('approved_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['subscription_id'], ['user_subscriptions.id'], ondelete='RESTRICT'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='RESTRICT'),
        sa.ForeignKeyConstraint(['plan_id'], ['subscription_plans.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['payment_method_id'], ['payment_methods.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_billing_payments_id'), 'billing_payments', ['id'], unique=False)
    op.create_index(op.f('ix_billing_payments_subscription_id'), 'billing_payments',
                    ['subscription_id'], unique=False)
    op.create_index(op.f('ix_billing_payments_user_id'), 'billing_payments', ['user_id'], unique=False)
    op.create_index(op.f('ix_billing_payments_billing_run_id'), 'billing_payments',
                    ['billing_run_id'], unique=False)
    op.create_index(op.f('ix_billing_payments_order_id'), 'billing_payments', ['order_id'], unique=False)
    op.create_index(op.f('ix_billing_payments_status'), 'billing_payments', ['status'], unique=False)

    op.create_table(
        'usage_daily_stats',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('user_id', sa.UUID(), nullable=False),
        sa.Column('usage_date', sa.Date(), nullable=False),
        sa.Column('rx_count', sa.Integer(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'usage_date', name='uq_usage_daily_user_date'),
    )
    op.create_index(op.f('ix_usage_daily_stats_id'), 'usage_daily_stats', ['id'], unique=False)
    op.create_index(op.f('ix_usage_daily_stats_user_id'), 'usage_daily_stats', ['user_id'], unique=False)
    op.create_index(op.f('ix_usage_daily_stats_usage_date'), 'usage_daily_stats', ['usage_date'], unique=False)

    op.create_table(
        'usage_billing_period_stats',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('subscription_id', sa.UUID(), nullable=False),
        sa.Column('user_id', sa.UUID(), nullable=False),
        sa.Column('period_start', sa.DateTime(), nullable=False),
        sa.Column('period_end', sa.DateTime(), nullable=False),
        sa.Column('total_rx_count', sa.Integer(), nullable=False),
        sa.Column('aggregated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['subscription_id'], ['user_subscriptions.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('subscription_id', 'period_start', name='uq_usage_period_subscription_start'),
    )
    op.create_index(op.f('ix_usage_billing_period_stats_id'), 'usage_billing_period_stats',
                    ['id'], unique=False)
    op.create_index(op.f('ix_usage_billing_period_stats_subscription_id'), 'usage_billing_period_stats',
                    ['subscription_id'], unique=False)

    op.create_table(
        'billing_runs',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('trigger', sa.String(length=20), nullable=False, comment='celery|cli|manual'),
        sa.Column('status', sa.String(length=20), nullable=False, comment='running|completed|aborted'),
        sa.Column('started_at', sa.DateTime(), nullable=False),
        sa.Column('finished_at', sa.DateTime(), nullable=True),
        sa.Column('summary', sa.JSON(), nullable=True,
                  comment='Contadores success/failed/skipped por fase'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_billing_runs_id'), 'billing_runs', ['id'], unique=False)
    op.create_index(op.f('ix_billing_runs_status'), 'billing_runs', ['status'], unique=False)
    op.create_index(op.f('ix_billing_runs_started_at'), 'billing_runs', ['started_at'], unique=False)

    op.create_table(
        'billing_incidents',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('billing_run_id', sa.UUID(), nullable=True),
        sa.Column('subscription_id', sa.UUID(), nullable=True),
        sa.Column('phase', sa.String(length=30), nullable=False),
        sa.Column('kind', sa.String(length=30), nullable=False,
                  comment='gateway_rejection|transient_gateway|data_store|inconsistent_write|unexpected'),
        sa.Column('order_id', sa.String(length=100), nullable=True),
        sa.Column('payment_key', sa.String(length=255), nullable=True),
        sa.Column('amount', sa.Integer(), nullable=True),
        sa.Column('detail', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_billing_incidents_id'), 'billing_incidents', ['id'], unique=False)
    op.create_index(op.f('ix_billing_incidents_billing_run_id'), 'billing_incidents',
                    ['billing_run_id'], unique=False)
    op.create_index(op.f('ix_billing_incidents_subscription_id'), 'billing_incidents',
                    ['subscription_id'], unique=False)
    op.create_index(op.f('ix_billing_incidents_kind'), 'billing_incidents', ['kind'], unique=False)
    op.create_index(op.f('ix_billing_incidents_created_at'), 'billing_incidents', ['created_at'], unique=False)


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table('billing_incidents')
    op.drop_table('billing_runs')
    op.drop_table('usage_billing_period_stats')
    op.drop_table('usage_daily_stats')
    op.drop_table('billing_payments')
    op.drop_table('pending_user_promotions')
    op.drop_table('user_subscriptions')
    op.drop_table('payment_methods')
    op.drop_table('subscription_promotions')
    op.drop_table('subscription_plans')
    op.drop_table('users')
