"""create accounting, quiz, session and user state tables

Revision ID: 3f1c9a7e2b40
Revises:
Create Date: 2026-10-19 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3f1c9a7e2b40'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'app_user',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('google_sub', sa.String(255), nullable=False, unique=True),
        sa.Column('email', sa.String(320), nullable=False, unique=True),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('picture_url', sa.String(1024), nullable=True),
        sa.Column('locale', sa.String(35), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('last_login_at', sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        'app_user_session',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('app_user.id'), nullable=False),
        sa.Column('session_token_hash', sa.String(64), nullable=False, unique=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('last_seen_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_app_user_session_user_id', 'app_user_session', ['user_id'])

    op.create_table(
        'ai_test',
        sa.Column('id', sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column('test', sa.JSON(), nullable=False),
        sa.Column('topic', sa.Text(), nullable=True),
        sa.Column('test_type', sa.String(50), nullable=True),
        sa.Column('difficulty', sa.String(50), nullable=True),
        sa.Column('language', sa.String(50), nullable=True),
        sa.Column('num_questions', sa.Integer(), nullable=True),
        sa.Column('created_by_user_id', sa.String(36), sa.ForeignKey('app_user.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_ai_test_created_at', 'ai_test', ['created_at'])

    op.create_table(
        'api_rate_limit_events',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('client_key', sa.String(64), nullable=False),
        sa.Column('route', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        'idx_api_rate_limit_events_lookup',
        'api_rate_limit_events',
        ['client_key', 'route', 'created_at'],
    )

    op.create_table(
        'api_request_events',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('route', sa.Text(), nullable=False),
        sa.Column('action', sa.String(100), nullable=True),
        sa.Column('client_key', sa.String(64), nullable=True),
        sa.Column('status_code', sa.Integer(), nullable=True),
        sa.Column('duration_ms', sa.Integer(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index(
        'idx_api_request_events_route_time',
        'api_request_events',
        ['route', 'created_at'],
    )

    op.create_table(
        'user_storage_state',
        sa.Column('user_id', sa.String(36), sa.ForeignKey('app_user.id'), primary_key=True),
        sa.Column('storage', sa.JSON(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        'user_test_attempts',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('app_user.id'), nullable=False),
        sa.Column('test_id', sa.BigInteger(), sa.ForeignKey('ai_test.id'), nullable=False),
        sa.Column('user_answers', sa.JSON(), nullable=False),
        sa.Column('score', sa.Integer(), nullable=True),
        sa.Column('total_questions', sa.Integer(), nullable=True),
        sa.Column('time_taken', sa.Integer(), nullable=True),
        sa.Column('submitted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint('user_id', 'test_id', name='uq_user_test_attempts_user_test'),
    )
    op.create_index('ix_user_test_attempts_user_id', 'user_test_attempts', ['user_id'])


def downgrade() -> None:
    op.drop_index('ix_user_test_attempts_user_id', table_name='user_test_attempts')
    op.drop_table('user_test_attempts')
    op.drop_table('user_storage_state')
    op.drop_index('idx_api_request_events_route_time', table_name='api_request_events')
    op.drop_table('api_request_events')
    op.drop_index('idx_api_rate_limit_events_lookup', table_name='api_rate_limit_events')
    op.drop_table('api_rate_limit_events')
    op.drop_index('ix_ai_test_created_at', table_name='ai_test')
    op.drop_table('ai_test')
    op.drop_index('ix_app_user_session_user_id', table_name='app_user_session')
    op.drop_table('app_user_session')
    op.drop_table('app_user')
