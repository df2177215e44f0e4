"""Initial relay schema

Revision ID: 001_initial
Revises:
Create Date: 2026-10-17

Users and subscriptions, bot connections with the live-binding partial
unique indexes, the inbound/outbound message log, conversations, the
credit ledger and the webhook event log.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Users table
    op.create_table(
        'users',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('email', sa.String(255), unique=True, index=True, nullable=False),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('subscription_status', sa.String(20), nullable=False, server_default='inactive'),
        sa.Column('external_billing_customer_id', sa.String(255), unique=True, nullable=True),
        sa.Column('trial_ends_at', sa.DateTime, nullable=True),
        sa.Column('subscription_checked_at', sa.DateTime, nullable=True),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime, server_default=sa.func.now()),
    )

    # Subscription mirror
    op.create_table(
        'subscriptions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id'), index=True, nullable=False),
        sa.Column('external_subscription_id', sa.String(255), unique=True, nullable=False),
        sa.Column('external_price_id', sa.String(255), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='inactive'),
        sa.Column('current_period_start', sa.DateTime, nullable=True),
        sa.Column('current_period_end', sa.DateTime, nullable=True),
        sa.Column('cancel_at_period_end', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('canceled_at', sa.DateTime, nullable=True),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime, server_default=sa.func.now()),
    )

    # Bot connections (id is the connect token)
    op.create_table(
        'bot_connections',
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id'), index=True, nullable=False),
        sa.Column('platform', sa.String(20), nullable=False),
        sa.Column('platform_identifier', sa.String(64), nullable=True),
        sa.Column('platform_username', sa.String(255), nullable=True),
        sa.Column('is_connected', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('connected_at', sa.DateTime, nullable=True),
        sa.Column('disconnected_at', sa.DateTime, nullable=True),
        sa.Column('last_activity_at', sa.DateTime, nullable=True),
        sa.Column('metadata_json', sa.JSON, nullable=True),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index('ix_bot_connections_identity', 'bot_connections', ['platform', 'platform_identifier'])
    op.create_index(
        'uq_bot_connections_live_identity', 'bot_connections', ['platform', 'platform_identifier'],
        unique=True,
        sqlite_where=sa.text('is_connected = 1'),
        postgresql_where=sa.text('is_connected'),
    )
    op.create_index(
        'uq_bot_connections_live_user_platform', 'bot_connections', ['user_id', 'platform'],
        unique=True,
        sqlite_where=sa.text('is_connected = 1'),
        postgresql_where=sa.text('is_connected'),
    )

    # Message log
    op.create_table(
        'incoming_messages',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('connection_id', sa.String(64), sa.ForeignKey('bot_connections.id'), index=True, nullable=True),
        sa.Column('platform', sa.String(20), nullable=False),
        sa.Column('external_message_id', sa.String(128), nullable=False),
        sa.Column('from_identifier', sa.String(64), nullable=False),
        sa.Column('message_type', sa.String(20), nullable=False, server_default='text'),
        sa.Column('content', sa.Text, nullable=True),
        sa.Column('media_reference', sa.String(512), nullable=True),
        sa.Column('metadata_json', sa.JSON, nullable=True),
        sa.Column('received_at', sa.DateTime, server_default=sa.func.now()),
        sa.UniqueConstraint('platform', 'external_message_id', name='uq_incoming_messages_platform_external'),
    )
    op.create_index(
        'ix_incoming_messages_sender_time',
        'incoming_messages',
        ['platform', 'from_identifier', 'received_at'],
    )

    op.create_table(
        'outgoing_messages',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('connection_id', sa.String(64), sa.ForeignKey('bot_connections.id'), index=True, nullable=True),
        sa.Column('platform', sa.String(20), nullable=False),
        sa.Column('external_message_id', sa.String(128), nullable=True),
        sa.Column('to_identifier', sa.String(64), nullable=False),
        sa.Column('message_type', sa.String(20), nullable=False, server_default='text'),
        sa.Column('content', sa.Text, nullable=False),
        sa.Column('status', sa.String(20), index=True, nullable=False, server_default='pending'),
        sa.Column('error_message', sa.Text, nullable=True),
        sa.Column('in_reply_to_id', sa.String(36), sa.ForeignKey('incoming_messages.id'), nullable=True),
        sa.Column('metadata_json', sa.JSON, nullable=True),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('sent_at', sa.DateTime, nullable=True),
        sa.Column('delivered_at', sa.DateTime, nullable=True),
        sa.UniqueConstraint('platform', 'external_message_id', name='uq_outgoing_messages_platform_external'),
    )

    # Conversations
    op.create_table(
        'conversations',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id'), index=True, nullable=False),
        sa.Column('connection_id', sa.String(64), sa.ForeignKey('bot_connections.id'), nullable=False),
        sa.Column('platform', sa.String(20), nullable=False),
        sa.Column('message_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime, server_default=sa.func.now()),
        sa.UniqueConstraint('user_id', 'connection_id', name='uq_conversations_user_connection'),
    )

    op.create_table(
        'conversation_messages',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('conversation_id', sa.String(36), sa.ForeignKey('conversations.id'), nullable=False),
        sa.Column('role', sa.String(20), nullable=False),
        sa.Column('content', sa.Text, nullable=False),
        sa.Column('message_type', sa.String(20), nullable=False, server_default='text'),
        sa.Column('incoming_message_id', sa.String(36), sa.ForeignKey('incoming_messages.id'), nullable=True),
        sa.Column('outgoing_message_id', sa.String(36), sa.ForeignKey('outgoing_messages.id'), nullable=True),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index(
        'ix_conversation_messages_conversation_id', 'conversation_messages', ['conversation_id', 'id']
    )

    # Credit ledger
    op.create_table(
        'credit_balances',
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id'), primary_key=True),
        sa.Column('balance', sa.Integer, nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime, server_default=sa.func.now()),
        sa.CheckConstraint('balance >= 0', name='ck_credit_balances_non_negative'),
    )

    op.create_table(
        'credit_transactions',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id'), index=True, nullable=False),
        sa.Column('delta', sa.Integer, nullable=False),
        sa.Column('reason', sa.String(50), nullable=False),
        sa.Column('reference', sa.String(255), nullable=True),
        sa.Column('metadata_json', sa.JSON, nullable=True),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
        sa.UniqueConstraint('user_id', 'reference', name='uq_credit_transactions_user_reference'),
    )

    # Provider webhook events
    op.create_table(
        'webhook_events',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('source', sa.String(20), nullable=False),
        sa.Column('external_event_id', sa.String(255), nullable=False),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('payload', sa.JSON, nullable=True),
        sa.Column('processed', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('error_message', sa.Text, nullable=True),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('processed_at', sa.DateTime, nullable=True),
        sa.UniqueConstraint('source', 'external_event_id', name='uq_webhook_events_source_external'),
    )


def downgrade() -> None:
    op.drop_table('webhook_events')
    op.drop_table('credit_transactions')
    op.drop_table('credit_balances')
    op.drop_index('ix_conversation_messages_conversation_id', table_name='conversation_messages')
    op.drop_table('conversation_messages')
    op.drop_table('conversations')
    op.drop_table('outgoing_messages')
    op.drop_index('ix_incoming_messages_sender_time', table_name='incoming_messages')
    op.drop_table('incoming_messages')
    op.drop_index('uq_bot_connections_live_user_platform', table_name='bot_connections')
    op.drop_index('uq_bot_connections_live_identity', table_name='bot_connections')
    op.drop_index('ix_bot_connections_identity', table_name='bot_connections')
    op.drop_table('bot_connections')
    op.drop_table('subscriptions')
    op.drop_table('users')
