"""Initial storage gateway schema

Revision ID: 001
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ### Create storage_sources table ###
    op.create_table(
        'storage_sources',
        sa.Column('id', sa.String(length=255), nullable=False),
        sa.Column('owner_id', sa.String(length=255), nullable=False),
        sa.Column('provider_kind', sa.String(length=32), nullable=False),
        sa.Column('display_name', sa.String(length=255), nullable=False),
        sa.Column('root_scope', sa.String(length=1024), nullable=False),
        sa.Column('credential_ref', sa.String(length=255), nullable=False),
        sa.Column('enabled', sa.Boolean(), nullable=False),
        sa.Column('settings', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_storage_sources_id'), 'storage_sources', ['id'], unique=False)
    op.create_index(op.f('ix_storage_sources_owner_id'), 'storage_sources', ['owner_id'], unique=False)

    # ### Create transfer_sessions table ###
    op.create_table(
        'transfer_sessions',
        sa.Column('id', sa.String(length=255), nullable=False),
        sa.Column('owner_id', sa.String(length=255), nullable=False),
        sa.Column('source_id', sa.String(length=255), nullable=False),
        sa.Column('path', sa.Text(), nullable=False),
        sa.Column('direction', sa.String(length=16), nullable=False),
        sa.Column('state', sa.String(length=16), nullable=False),
        sa.Column('total_size', sa.BigInteger(), nullable=True),
        sa.Column('part_size', sa.BigInteger(), nullable=False),
        sa.Column('expected_parts', sa.Integer(), nullable=True),
        sa.Column('last_part_index', sa.Integer(), nullable=True),
        sa.Column('completed_parts', sa.JSON(), nullable=False),
        sa.Column('upload', sa.JSON(), nullable=True),
        sa.Column('error_kind', sa.String(length=50), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_transfer_source_state', 'transfer_sessions', ['source_id', 'state'], unique=False)
    op.create_index(op.f('ix_transfer_sessions_id'), 'transfer_sessions', ['id'], unique=False)
    op.create_index(op.f('ix_transfer_sessions_owner_id'), 'transfer_sessions', ['owner_id'], unique=False)
    op.create_index(op.f('ix_transfer_sessions_source_id'), 'transfer_sessions', ['source_id'], unique=False)
    op.create_index(op.f('ix_transfer_sessions_state'), 'transfer_sessions', ['state'], unique=False)
    op.create_index(op.f('ix_transfer_sessions_updated_at'), 'transfer_sessions', ['updated_at'], unique=False)

    # ### Create rate_limit_attempts table ###
    op.create_table(
        'rate_limit_attempts',
        sa.Column('identifier', sa.Text(), nullable=False),
        sa.Column('count', sa.Integer(), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('identifier')
    )
    op.create_index(op.f('ix_rate_limit_attempts_expires_at'), 'rate_limit_attempts', ['expires_at'], unique=False)


def downgrade() -> None:
    op.drop_index(op.f('ix_rate_limit_attempts_expires_at'), table_name='rate_limit_attempts')
    op.drop_table('rate_limit_attempts')

    op.drop_index(op.f('ix_transfer_sessions_updated_at'), table_name='transfer_sessions')
    op.drop_index(op.f('ix_transfer_sessions_state'), table_name='transfer_sessions')
    op.drop_index(op.f('ix_transfer_sessions_source_id'), table_name='transfer_sessions')
    op.drop_index(op.f('ix_transfer_sessions_owner_id'), table_name='transfer_sessions')
    op.drop_index(op.f('ix_transfer_sessions_id'), table_name='transfer_sessions')
    op.drop_index('idx_transfer_source_state', table_name='transfer_sessions')
    op.drop_table('transfer_sessions')

    op.drop_index(op.f('ix_storage_sources_owner_id'), table_name='storage_sources')
    op.drop_index(op.f('ix_storage_sources_id'), table_name='storage_sources')
    op.drop_table('storage_sources')
