"""initial

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table('seat_plans',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=128), nullable=True),
        sa.Column('layout', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    )

    op.create_table('trips',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('seat_plan_id', sa.Integer(), sa.ForeignKey('seat_plans.id', ondelete='SET NULL'), nullable=True),
        sa.Column('capacity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('booked_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('status', sa.String(length=50), nullable=False, server_default='scheduled'),
        sa.Column('departure_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.CheckConstraint('booked_count >= 0', name='ck_trip_booked_count_non_negative'),
        sa.CheckConstraint('booked_count <= capacity', name='ck_trip_booked_count_within_capacity'),
    )
    op.create_index('ix_trips_seat_plan_id', 'trips', ['seat_plan_id'], unique=False)
    op.create_index('ix_trips_status', 'trips', ['status'], unique=False)
    op.create_index('ix_trips_departure_time', 'trips', ['departure_time'], unique=False)

    op.create_table('seat_locks',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('trip_id', sa.Integer(), sa.ForeignKey('trips.id', ondelete='CASCADE'), nullable=False),
        sa.Column('seat_code', sa.String(length=16), nullable=False),
        sa.Column('status', sa.Integer(), nullable=False, server_default='2'),
        sa.Column('holder_user_id', sa.Integer(), nullable=True),
        sa.Column('hold_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint('trip_id', 'seat_code', name='uq_seat_lock_trip_seat'),
    )
    op.create_index('ix_seat_locks_trip_id', 'seat_locks', ['trip_id'], unique=False)
    op.create_index('ix_seat_lock_status_expiry', 'seat_locks', ['status', 'hold_expires_at'], unique=False)

    op.create_table('booked_count_audit',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('trip_id', sa.Integer(), sa.ForeignKey('trips.id', ondelete='CASCADE'), nullable=False),
        sa.Column('before', sa.Integer(), nullable=False),
        sa.Column('after', sa.Integer(), nullable=False),
        sa.Column('delta', sa.Integer(), nullable=False),
        sa.Column('operation_kind', sa.String(length=50), nullable=False),
        sa.Column('actor_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_booked_count_audit_trip_id', 'booked_count_audit', ['trip_id'], unique=False)


def downgrade():
    op.drop_index('ix_booked_count_audit_trip_id', table_name='booked_count_audit')
    op.drop_table('booked_count_audit')
    op.drop_index('ix_seat_lock_status_expiry', table_name='seat_locks')
    op.drop_index('ix_seat_locks_trip_id', table_name='seat_locks')
    op.drop_table('seat_locks')
    op.drop_index('ix_trips_departure_time', table_name='trips')
    op.drop_index('ix_trips_status', table_name='trips')
    op.drop_index('ix_trips_seat_plan_id', table_name='trips')
    op.drop_table('trips')
    op.drop_table('seat_plans')
