"""create_refund_ledger_tables

Revision ID: 3b9e1c4d7a21
Revises:
Create Date: 2026-10-19 09:00:12.418305

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '3b9e1c4d7a21'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create orders table
    op.create_table(
        'orders',
        sa.Column('id', sa.String(length=100), nullable=False, comment='订单ID'),
        sa.Column('customer_id', sa.String(length=100), nullable=True, comment='客户ID'),
        sa.Column('status', sa.String(length=50), nullable=False, server_default='pending', comment='订单状态: pending/paid/processing/shipped/delivered/partially_refunded/refunded/cancelled'),
        sa.Column('total_amount', sa.Numeric(precision=15, scale=2), nullable=False, comment='订单总额'),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='GBP', comment='货币代码 ISO-4217'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='创建时间'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='更新时间'),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True, comment='取消时间'),
        sa.PrimaryKeyConstraint('id'),
        comment='订单表，只记录退款核心需要的状态与金额'
    )
    op.create_index('ix_orders_customer_id', 'orders', ['customer_id'], unique=False)
    op.create_index('ix_orders_status', 'orders', ['status'], unique=False)
    op.create_index('ix_orders_created_at', 'orders', ['created_at'], unique=False)

    # Create payments table
    op.create_table(
        'payments',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False, comment='主键ID'),
        sa.Column('order_id', sa.String(length=100), nullable=False, comment='订单ID'),
        sa.Column('provider', sa.String(length=50), nullable=False, server_default='stripe', comment='支付提供商'),
        sa.Column('gateway_payment_reference', sa.String(length=200), nullable=True, comment='网关支付引用（Stripe PaymentIntent ID）'),
        sa.Column('amount', sa.Numeric(precision=15, scale=2), nullable=False, comment='支付金额'),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='GBP', comment='货币代码 ISO-4217'),
        sa.Column('status', sa.String(length=50), nullable=False, server_default='pending', comment='支付状态: pending/processing/succeeded/failed/voided/partially_refunded/refunded'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='创建时间'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='更新时间'),
        sa.Column('captured_at', sa.DateTime(timezone=True), nullable=True, comment='扣款成功时间'),
        sa.Column('failure_reason', sa.Text(), nullable=True, comment='失败原因'),
        sa.Column('metadata', sa.JSON(), nullable=True, comment='扩展元数据（争议记录等）'),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        comment='支付表，一个订单可以有多次支付尝试'
    )
    op.create_index('ix_payments_id', 'payments', ['id'], unique=False)
    op.create_index('ix_payments_order_id', 'payments', ['order_id'], unique=False)
    op.create_index('ix_payments_status', 'payments', ['status'], unique=False)
    op.create_index('ix_payments_provider_ref', 'payments', ['provider', 'gateway_payment_reference'], unique=True)
    op.create_index('ix_payments_order_status', 'payments', ['order_id', 'status'], unique=False)

    # Create refunds table
    op.create_table(
        'refunds',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False, comment='主键ID'),
        sa.Column('payment_id', sa.Integer(), nullable=False, comment='关联的支付ID'),
        sa.Column('order_id', sa.String(length=100), nullable=False, comment='订单ID'),
        sa.Column('gateway_refund_reference', sa.String(length=200), nullable=True, comment='网关退款ID'),
        sa.Column('amount', sa.Numeric(precision=15, scale=2), nullable=False, comment='退款金额'),
        sa.Column('currency', sa.String(length=3), nullable=False, comment='货币代码'),
        sa.Column('status', sa.String(length=50), nullable=False, server_default='pending', comment='退款状态: pending/processing/succeeded/failed/cancelled'),
        sa.Column('reason', sa.String(length=50), nullable=False, comment='退款原因'),
        sa.Column('notes', sa.Text(), nullable=True, comment='备注'),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0', comment='已重试次数'),
        sa.Column('max_retries', sa.Integer(), nullable=False, server_default='3', comment='最大重试次数'),
        sa.Column('failure_reason', sa.Text(), nullable=True, comment='失败原因'),
        sa.Column('requested_by', sa.String(length=100), nullable=False, comment='发起人'),
        sa.Column('cancelled_by', sa.String(length=100), nullable=True, comment='取消人'),
        sa.Column('last_retried_by', sa.String(length=100), nullable=True, comment='最近重试人'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='创建时间'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='更新时间'),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True, comment='网关受理时间'),
        sa.Column('settled_at', sa.DateTime(timezone=True), nullable=True, comment='退款成功时间'),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True, comment='取消时间'),
        sa.Column('last_retried_at', sa.DateTime(timezone=True), nullable=True, comment='最近重试时间'),
        sa.Column('metadata', sa.JSON(), nullable=True, comment='扩展元数据'),
        sa.ForeignKeyConstraint(['payment_id'], ['payments.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('gateway_refund_reference'),
        comment='退款表，一条记录对应一次退款请求，重试复用同一条记录'
    )
    op.create_index('ix_refunds_id', 'refunds', ['id'], unique=False)
    op.create_index('ix_refunds_payment_id', 'refunds', ['payment_id'], unique=False)
    op.create_index('ix_refunds_order_id', 'refunds', ['order_id'], unique=False)
    op.create_index('ix_refunds_status', 'refunds', ['status'], unique=False)
    op.create_index('ix_refunds_created_at', 'refunds', ['created_at'], unique=False)
    op.create_index('ix_refunds_payment_status', 'refunds', ['payment_id', 'status'], unique=False)
    op.create_index('ix_refunds_status_updated', 'refunds', ['status', 'updated_at'], unique=False)


def downgrade() -> None:
    # Drop indexes
    op.drop_index('ix_refunds_status_updated', table_name='refunds')
    op.drop_index('ix_refunds_payment_status', table_name='refunds')
    op.drop_index('ix_refunds_created_at', table_name='refunds')
    op.drop_index('ix_refunds_status', table_name='refunds')
    op.drop_index('ix_refunds_order_id', table_name='refunds')
    op.drop_index('ix_refunds_payment_id', table_name='refunds')
    op.drop_index('ix_refunds_id', table_name='refunds')
    op.drop_table('refunds')

    op.drop_index('ix_payments_order_status', table_name='payments')
    op.drop_index('ix_payments_provider_ref', table_name='payments')
    op.drop_index('ix_payments_status', table_name='payments')
    op.drop_index('ix_payments_order_id', table_name='payments')
    op.drop_index('ix_payments_id', table_name='payments')
    op.drop_table('payments')

    op.drop_index('ix_orders_created_at', table_name='orders')
    op.drop_index('ix_orders_status', table_name='orders')
    op.drop_index('ix_orders_customer_id', table_name='orders')
    op.drop_table('orders')
