"""
Create users, service_providers, bookings and messages for booking chat.

Revision ID: 20251020_01_create_chat_tables
Revises:
Create Date: 2025-10-20
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from typing import Union

# revision identifiers, used by Alembic.
revision: str = '20251020_01_create_chat_tables'
down_revision: Union[str, None] = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    ]


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('first_name', sa.String(), nullable=False, server_default=''),
        sa.Column('last_name', sa.String(), nullable=False, server_default=''),
        sa.Column(
            'user_type',
            sa.Enum('SERVICE_PROVIDER', 'CUSTOMER', name='usertype'),
            nullable=False,
            server_default='CUSTOMER',
        ),
        sa.Column('is_active', sa.Boolean(), nullable=True, server_default=sa.true()),
        sa.Column('avatar_url', sa.String(), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_users_id', 'users', ['id'])
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'service_providers',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('business_name', sa.String(), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_service_providers_id', 'service_providers', ['id'])
    op.create_index('ix_service_providers_user_id', 'service_providers', ['user_id'], unique=True)

    op.create_table(
        'bookings',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('customer_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('provider_id', sa.Integer(), sa.ForeignKey('service_providers.id'), nullable=False),
        sa.Column(
            'status',
            sa.Enum('pending', 'accepted', 'in_progress', 'completed', 'cancelled', name='bookingstatus'),
            nullable=False,
            server_default='pending',
        ),
        sa.Column('scheduled_date', sa.DateTime(), nullable=True),
        sa.Column('notes', sa.String(), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_bookings_id', 'bookings', ['id'])
    op.create_index('ix_bookings_customer_id', 'bookings', ['customer_id'])
    op.create_index('ix_bookings_provider_id', 'bookings', ['provider_id'])
    op.create_index('ix_bookings_status', 'bookings', ['status'])

    op.create_table(
        'messages',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('booking_id', sa.Integer(), sa.ForeignKey('bookings.id'), nullable=False),
        sa.Column('sender_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('receiver_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('body', sa.Text(), nullable=False),
        sa.Column(
            'kind',
            sa.Enum('text', 'attachment', name='messagekind'),
            nullable=False,
            server_default='text',
        ),
        sa.Column('mime_hint', sa.String(), nullable=True),
        sa.Column('is_read', sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
    )
    op.create_index('ix_messages_id', 'messages', ['id'])
    op.create_index('ix_messages_created_at', 'messages', ['created_at'])
    # History reads: one conversation in (created_at, id) order
    op.create_index('ix_messages_booking_time_id', 'messages', ['booking_id', 'created_at', 'id'])
    # Unread aggregation without a join
    op.create_index('ix_messages_receiver_unread', 'messages', ['receiver_id', 'is_read', 'booking_id'])


def downgrade() -> None:
    op.drop_index('ix_messages_receiver_unread', table_name='messages')
    op.drop_index('ix_messages_booking_time_id', table_name='messages')
    op.drop_index('ix_messages_created_at', table_name='messages')
    op.drop_index('ix_messages_id', table_name='messages')
    op.drop_table('messages')

    op.drop_index('ix_bookings_status', table_name='bookings')
    op.drop_index('ix_bookings_provider_id', table_name='bookings')
    op.drop_index('ix_bookings_customer_id', table_name='bookings')
    op.drop_index('ix_bookings_id', table_name='bookings')
    op.drop_table('bookings')

    op.drop_index('ix_service_providers_user_id', table_name='service_providers')
    op.drop_index('ix_service_providers_id', table_name='service_providers')
    op.drop_table('service_providers')

    op.drop_index('ix_users_email', table_name='users')
    op.drop_index('ix_users_id', table_name='users')
    op.drop_table('users')

    # Postgres keeps enum types around after the tables are gone
    bind = op.get_bind()
    if bind.dialect.name == 'postgresql':
        for name in ('messagekind', 'bookingstatus', 'usertype'):
            op.execute(f'DROP TYPE IF EXISTS {name}')
