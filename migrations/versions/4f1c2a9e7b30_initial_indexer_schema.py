"""initial indexer schema

Revision ID: 4f1c2a9e7b30
Revises:
Create Date: 2026-10-18 12:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '4f1c2a9e7b30'
down_revision = None
branch_labels = None
depends_on = None

JOB_STATUSES = (
    'open', 'claimed', 'submitted', 'verified',
    'cancelled', 'claim_expired', 'verify_expired', 'emergency_released',
)


def upgrade():
    op.create_table(
        'jobs',
        sa.Column('job_id', sa.String(66), primary_key=True),
        sa.Column('title', sa.Text()),
        sa.Column('poster_id', sa.String(200)),
        sa.Column('claimer_id', sa.String(200), nullable=True),
        sa.Column('reward', sa.String(80)),
        sa.Column('status', sa.String(20), nullable=False, server_default='open'),
        sa.Column('submission_hash', sa.String(130), nullable=True),
        sa.Column('approved', sa.Boolean(), nullable=True),
        sa.Column('created_block', sa.BigInteger()),
        sa.Column('claimed_block', sa.BigInteger()),
        sa.Column('submitted_block', sa.BigInteger()),
        sa.Column('verified_block', sa.BigInteger()),
        sa.Column('cancelled_block', sa.BigInteger()),
        sa.Column('created_at', sa.DateTime()),
        sa.Column('updated_at', sa.DateTime()),
        sa.CheckConstraint(
            "status IN ({})".format(', '.join(f"'{s}'" for s in JOB_STATUSES)),
            name='ck_jobs_status',
        ),
    )
    op.create_index('ix_jobs_poster_id', 'jobs', ['poster_id'])
    op.create_index('ix_jobs_claimer_id', 'jobs', ['claimer_id'])
    op.create_index('ix_jobs_status', 'jobs', ['status'])

    op.create_table(
        'agents',
        sa.Column('agent_id', sa.String(200), primary_key=True),
        sa.Column('name', sa.String(200)),
        sa.Column('wallet', sa.String(42)),
        sa.Column('registered_block', sa.BigInteger()),
        sa.Column('created_at', sa.DateTime()),
    )
    op.create_index('ix_agents_wallet', 'agents', ['wallet'])

    op.create_table(
        'events',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('event_type', sa.String(64), nullable=False),
        sa.Column('job_id', sa.String(66), nullable=True),
        sa.Column('agent_id', sa.String(200), nullable=True),
        sa.Column('tx_hash', sa.String(66), nullable=False),
        sa.Column('block_number', sa.BigInteger(), nullable=False),
        sa.Column('log_index', sa.Integer(), nullable=False),
        sa.Column('data', sa.Text()),
        sa.Column('created_at', sa.DateTime()),
        sa.UniqueConstraint('tx_hash', 'log_index', name='uq_events_tx_log'),
    )
    op.create_index('ix_events_job_id', 'events', ['job_id'])
    op.create_index('ix_events_event_type', 'events', ['event_type'])
    op.create_index('ix_events_block_log', 'events', ['block_number', 'log_index'])

    op.create_table(
        'sync_state',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('last_block', sa.BigInteger(), nullable=False),
        sa.CheckConstraint('id = 1', name='ck_sync_state_singleton'),
    )


def downgrade():
    op.drop_table('sync_state')
    op.drop_index('ix_events_block_log', table_name='events')
    op.drop_index('ix_events_event_type', table_name='events')
    op.drop_index('ix_events_job_id', table_name='events')
    op.drop_table('events')
    op.drop_index('ix_agents_wallet', table_name='agents')
    op.drop_table('agents')
    op.drop_index('ix_jobs_status', table_name='jobs')
    op.drop_index('ix_jobs_claimer_id', table_name='jobs')
    op.drop_index('ix_jobs_poster_id', table_name='jobs')
    op.drop_table('jobs')
