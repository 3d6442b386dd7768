"""create_purchase_ledger

Revision ID: 4b1f2c7e9a10
Revises:
Create Date: 2026-03-01 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '4b1f2c7e9a10'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # 课程目录与买家（只读协作数据）
    op.create_table(
        'courses',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('title', sa.String(length=200), nullable=False, comment='课程标题'),
        sa.Column('description', sa.Text(), nullable=True, comment='课程简介'),
        sa.Column('price', sa.Numeric(precision=15, scale=2), nullable=False, comment='课程价格'),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='INR', comment='货币代码'),
        sa.Column('is_published', sa.Boolean(), nullable=False, server_default=sa.true(), comment='是否已发布'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_courses_id', 'courses', ['id'], unique=False)

    op.create_table(
        'buyers',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False, comment='邮箱'),
        sa.Column('name', sa.String(length=100), nullable=True, comment='姓名'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email'),
    )
    op.create_index('ix_buyers_id', 'buyers', ['id'], unique=False)

    # 购买账本
    op.create_table(
        'purchases',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('buyer_id', sa.Integer(), nullable=False, comment='买家ID'),
        sa.Column('course_id', sa.Integer(), nullable=False, comment='课程ID'),
        sa.Column('amount', sa.Numeric(precision=15, scale=2), nullable=False, comment='购买金额'),
        sa.Column('currency', sa.String(length=3), nullable=False, comment='货币代码 ISO-4217'),
        sa.Column('status', sa.String(length=20), nullable=False, comment='购买状态: pending/completed/refunded/failed'),
        sa.Column('provider', sa.String(length=50), nullable=False, comment='支付网关: razorpay/stripe'),
        sa.Column('gateway_order_ref', sa.String(length=200), nullable=True, comment='网关订单号（对账幂等键）'),
        sa.Column('gateway_payment_ref', sa.String(length=200), nullable=True, comment='网关支付号'),
        sa.Column('payment_method', sa.String(length=100), nullable=True, comment='支付方式'),
        sa.Column('failure_reason', sa.Text(), nullable=True, comment='失败原因'),
        sa.Column('refund_ref', sa.String(length=200), nullable=True, comment='网关退款号'),
        sa.Column('refund_amount', sa.Numeric(precision=15, scale=2), nullable=True, comment='退款金额'),
        sa.Column('refund_reason', sa.Text(), nullable=True, comment='退款原因'),
        sa.Column('refunded_at', sa.DateTime(timezone=True), nullable=True, comment='退款时间'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False, comment='创建时间'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False, comment='更新时间'),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True, comment='支付完成时间'),
        sa.Column('metadata', sa.JSON(), nullable=True, comment='扩展元数据'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('gateway_order_ref'),
    )
    op.create_index('ix_purchases_id', 'purchases', ['id'], unique=False)
    op.create_index('ix_purchases_buyer_id', 'purchases', ['buyer_id'], unique=False)
    op.create_index('ix_purchases_course_id', 'purchases', ['course_id'], unique=False)
    op.create_index('ix_purchases_status', 'purchases', ['status'], unique=False)
    op.create_index('ix_purchases_created_at', 'purchases', ['created_at'], unique=False)
    op.create_index('ix_purchases_gateway_payment_ref', 'purchases', ['gateway_payment_ref'], unique=False)
    op.create_index('ix_purchases_buyer_course', 'purchases', ['buyer_id', 'course_id'], unique=False)
    op.create_index('ix_purchases_status_created', 'purchases', ['status', 'created_at'], unique=False)
    # 同一 (buyer, course) 至多一条 completed 记录
    op.create_index(
        'uq_purchases_completed_buyer_course',
        'purchases',
        ['buyer_id', 'course_id'],
        unique=True,
        postgresql_where=sa.text("status = 'completed'"),
        sqlite_where=sa.text("status = 'completed'"),
    )

    # 选课视图
    op.create_table(
        'buyer_enrollments',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('buyer_id', sa.Integer(), nullable=False, comment='买家ID'),
        sa.Column('course_id', sa.Integer(), nullable=False, comment='课程ID'),
        sa.Column('enrolled_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False, comment='选课时间'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('buyer_id', 'course_id', name='uq_buyer_enrollments_buyer_course'),
    )
    op.create_index('ix_buyer_enrollments_id', 'buyer_enrollments', ['id'], unique=False)
    op.create_index('ix_buyer_enrollments_buyer_id', 'buyer_enrollments', ['buyer_id'], unique=False)

    op.create_table(
        'course_students',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('course_id', sa.Integer(), nullable=False, comment='课程ID'),
        sa.Column('buyer_id', sa.Integer(), nullable=False, comment='学员（买家）ID'),
        sa.Column('added_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('course_id', 'buyer_id', name='uq_course_students_course_buyer'),
    )
    op.create_index('ix_course_students_id', 'course_students', ['id'], unique=False)
    op.create_index('ix_course_students_course_id', 'course_students', ['course_id'], unique=False)


def downgrade() -> None:
    op.drop_index('ix_course_students_course_id', table_name='course_students')
    op.drop_index('ix_course_students_id', table_name='course_students')
    op.drop_table('course_students')

    op.drop_index('ix_buyer_enrollments_buyer_id', table_name='buyer_enrollments')
    op.drop_index('ix_buyer_enrollments_id', table_name='buyer_enrollments')
    op.drop_table('buyer_enrollments')

    op.drop_index('uq_purchases_completed_buyer_course', table_name='purchases')
    op.drop_index('ix_purchases_status_created', table_name='purchases')
    op.drop_index('ix_purchases_buyer_course', table_name='purchases')
    op.drop_index('ix_purchases_gateway_payment_ref', table_name='purchases')
    op.drop_index('ix_purchases_created_at', table_name='purchases')
    op.drop_index('ix_purchases_status', table_name='purchases')
    op.drop_index('ix_purchases_course_id', table_name='purchases')
    op.drop_index('ix_purchases_buyer_id', table_name='purchases')
    op.drop_index('ix_purchases_id', table_name='purchases')
    op.drop_table('purchases')

    op.drop_index('ix_buyers_id', table_name='buyers')
    op.drop_table('buyers')

    op.drop_index('ix_courses_id', table_name='courses')
    op.drop_table('courses')
