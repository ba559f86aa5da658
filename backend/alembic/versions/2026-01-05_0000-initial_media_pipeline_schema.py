"""initial media pipeline schema

Revision ID: 4b1d2c7e9a01
Revises:
Create Date: 2026-01-05 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '4b1d2c7e9a01'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# text-embedding-3-small; a different EMBEDDING_DIMENSION needs its own migration
EMBEDDING_DIMENSION = 1536

service_tier = sa.Enum('FREE', 'PREMIUM', 'ULTIMATE', name='servicetier')
media_kind = sa.Enum('IMAGE', 'VIDEO', name='mediakind')
media_status = sa.Enum('UPLOADED', 'QUEUED', 'PROCESSING', 'COMPLETED', 'FAILED', 'DELETED', name='mediastatus')
capability = sa.Enum(
    'OBJECT_DETECTION', 'TEXT_DETECTION', 'CELEBRITY_DETECTION', 'TRANSCRIPTION', 'TEXT_ANALYSIS', 'EMBEDDING',
    name='capability',
)
# Already created with processing_jobs
capability_ref = postgresql.ENUM(*capability.enums, name='capability', create_type=False)
job_status = sa.Enum('PENDING', 'PROCESSING', 'COMPLETED', 'FAILED', 'RETRYING', name='jobstatus')
error_class = sa.Enum('TRANSIENT', 'PERMANENT', 'BUDGET', name='errorclass')


def _common_columns() -> list:
    return [
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False, comment='Auto-incrementing primary key'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, comment='Timestamp when record was created (UTC)'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, comment='Timestamp when record was last updated (UTC)'),
    ]


def _json() -> postgresql.JSONB:
    return postgresql.JSONB(astext_type=sa.Text())


def upgrade() -> None:
    """
    Create the media pipeline schema.

    Tables:
    1. users - identity mirror with service tier
    2. media_items, media_tags - uploaded media and search tags
    3. processing_jobs, analysis_results - the durable job queue and its outputs
    4. aggregated_contents, embeddings - merged text and vectors
    5. cost_records, budget_periods - cost ledger and budget gate
    6. search_history - immutable log of executed searches

    Plus an HNSW index (cosine) on embeddings.vector.
    """

    # ================================
    # Enable pgvector extension if not already enabled
    # ================================
    op.execute('CREATE EXTENSION IF NOT EXISTS vector')

    # ================================
    # users
    # ================================
    op.create_table(
        'users',
        *_common_columns(),
        sa.Column('external_id', sa.String(length=255), nullable=False, comment='Identity from the auth service (JWT sub claim)'),
        sa.Column('email', sa.String(length=255), nullable=False, comment="User's email address"),
        sa.Column('name', sa.String(length=100), nullable=True, comment='Display name'),
        sa.Column('tier', service_tier, nullable=False, comment='Service tier: free, premium, ultimate'),
        sa.Column('is_active', sa.Boolean(), nullable=False, comment='Disabled accounts cannot enqueue or search'),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_users')),
        sa.UniqueConstraint('email', name=op.f('uq_users_email')),
    )
    op.create_index('ix_users_external_id', 'users', ['external_id'], unique=True)

    # ================================
    # media_items / media_tags
    # ================================
    op.create_table(
        'media_items',
        *_common_columns(),
        sa.Column('owner_id', sa.Integer(), nullable=False, comment='Owning user'),
        sa.Column('kind', media_kind, nullable=False, comment='image or video'),
        sa.Column('locator', sa.String(length=500), nullable=False, comment='Storage key of the uploaded object'),
        sa.Column('filename', sa.String(length=255), nullable=False),
        sa.Column('mime_type', sa.String(length=100), nullable=False),
        sa.Column('size_bytes', sa.BigInteger(), nullable=False),
        sa.Column('duration_seconds', sa.Float(), nullable=True, comment='Video duration when known (used for cost estimates)'),
        sa.Column('status', media_status, nullable=False),
        sa.Column('failure_reason', sa.String(length=100), nullable=True),
        sa.Column('failure_message', sa.Text(), nullable=True),
        sa.Column('uploaded_at', sa.DateTime(timezone=True), nullable=False, comment='Upload confirmation time; newest first breaks search ties'),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['owner_id'], ['users.id'], name=op.f('fk_media_items_owner_id_users'), ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_media_items')),
    )
    op.create_index('ix_media_items_owner_id', 'media_items', ['owner_id'])
    op.create_index('ix_media_items_kind', 'media_items', ['kind'])
    op.create_index('ix_media_items_status', 'media_items', ['status'])
    op.create_index('ix_media_items_uploaded_at', 'media_items', ['uploaded_at'])

    op.create_table(
        'media_tags',
        *_common_columns(),
        sa.Column('media_item_id', sa.Integer(), nullable=False),
        sa.Column('tag', sa.String(length=100), nullable=False),
        sa.ForeignKeyConstraint(['media_item_id'], ['media_items.id'], name=op.f('fk_media_tags_media_item_id_media_items'), ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_media_tags')),
        sa.UniqueConstraint('media_item_id', 'tag', name='uq_media_tag'),
    )
    op.create_index('ix_media_tags_media_item_id', 'media_tags', ['media_item_id'])
    op.create_index('ix_media_tags_tag', 'media_tags', ['tag'])

    # ================================
    # processing_jobs / analysis_results
    # ================================
    op.create_table(
        'processing_jobs',
        *_common_columns(),
        sa.Column('media_item_id', sa.Integer(), nullable=False),
        sa.Column('owner_id', sa.Integer(), nullable=False, comment='Copied from the media item; budget checks are per owner'),
        sa.Column('capability', capability, nullable=False),
        sa.Column('mandatory', sa.Boolean(), nullable=False, comment='Optional capabilities fail soft and are left out of aggregation'),
        sa.Column('status', job_status, nullable=False),
        sa.Column('priority', sa.Integer(), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False),
        sa.Column('max_attempts', sa.Integer(), nullable=False),
        sa.Column('next_retry_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('claimed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('claimed_by', sa.String(length=100), nullable=True, comment='Worker identifier holding the claim'),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('error_class', error_class, nullable=True),
        sa.Column('error_reason', sa.String(length=100), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('result_summary', _json(), nullable=True, comment='Small summary of the outcome (counts, cost) for listings'),
        sa.ForeignKeyConstraint(['media_item_id'], ['media_items.id'], name=op.f('fk_processing_jobs_media_item_id_media_items'), ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['owner_id'], ['users.id'], name=op.f('fk_processing_jobs_owner_id_users'), ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_processing_jobs')),
    )
    op.create_index('ix_processing_jobs_media_item_id', 'processing_jobs', ['media_item_id'])
    op.create_index('ix_processing_jobs_owner_id', 'processing_jobs', ['owner_id'])
    op.create_index('ix_processing_jobs_capability', 'processing_jobs', ['capability'])
    op.create_index('ix_processing_jobs_status', 'processing_jobs', ['status'])
    op.create_index('ix_processing_jobs_next_retry_at', 'processing_jobs', ['next_retry_at'])
    op.create_index(
        'ix_processing_jobs_claim_order',
        'processing_jobs',
        ['status', 'capability', 'priority', 'created_at'],
    )

    op.create_table(
        'analysis_results',
        *_common_columns(),
        sa.Column('job_id', sa.Integer(), nullable=False),
        sa.Column('media_item_id', sa.Integer(), nullable=False),
        sa.Column('capability', capability_ref, nullable=False),
        sa.Column('labels', _json(), nullable=False),
        sa.Column('entities', _json(), nullable=False),
        sa.Column('text', sa.Text(), nullable=False),
        sa.Column('segments', _json(), nullable=False),
        sa.Column('sentiment', sa.String(length=20), nullable=True),
        sa.Column('sentiment_scores', _json(), nullable=True),
        sa.Column('content_warnings', _json(), nullable=False),
        sa.Column('provider', sa.String(length=100), nullable=True),
        sa.ForeignKeyConstraint(['job_id'], ['processing_jobs.id'], name=op.f('fk_analysis_results_job_id_processing_jobs'), ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['media_item_id'], ['media_items.id'], name=op.f('fk_analysis_results_media_item_id_media_items'), ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_analysis_results')),
        sa.UniqueConstraint('job_id', name=op.f('uq_analysis_results_job_id')),
    )
    op.create_index('ix_analysis_results_media_item_id', 'analysis_results', ['media_item_id'])

    # ================================
    # aggregated_contents / embeddings
    # ================================
    op.create_table(
        'aggregated_contents',
        *_common_columns(),
        sa.Column('media_item_id', sa.Integer(), nullable=False),
        sa.Column('text', sa.Text(), nullable=False),
        sa.Column('tags', _json(), nullable=False, comment='Deduplicated label/entity names above the confidence threshold'),
        sa.Column('content_hash', sa.String(length=64), nullable=False, comment='sha256 of the normalized text'),
        sa.Column('source_result_ids', _json(), nullable=False),
        sa.Column('content_metadata', _json(), nullable=True, comment='Sentiment, content warnings, transcript segments'),
        sa.ForeignKeyConstraint(['media_item_id'], ['media_items.id'], name=op.f('fk_aggregated_contents_media_item_id_media_items'), ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_aggregated_contents')),
        sa.UniqueConstraint('media_item_id', name=op.f('uq_aggregated_contents_media_item_id')),
    )
    op.create_index('ix_aggregated_contents_content_hash', 'aggregated_contents', ['content_hash'])

    op.create_table(
        'embeddings',
        *_common_columns(),
        sa.Column('media_item_id', sa.Integer(), nullable=False),
        sa.Column('source_text', sa.Text(), nullable=False),
        sa.Column('content_hash', sa.String(length=64), nullable=False),
        sa.Column('model', sa.String(length=100), nullable=False),
        sa.Column('is_empty', sa.Boolean(), nullable=False, comment='Zero vector from empty text; never matched by search'),
        sa.Column('segment_index', sa.Integer(), nullable=True),
        sa.Column('start_time', sa.Float(), nullable=True),
        sa.Column('end_time', sa.Float(), nullable=True),
        sa.ForeignKeyConstraint(['media_item_id'], ['media_items.id'], name=op.f('fk_embeddings_media_item_id_media_items'), ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_embeddings')),
    )
    op.execute(f'ALTER TABLE embeddings ADD COLUMN vector vector({EMBEDDING_DIMENSION}) NOT NULL')
    op.create_index('ix_embeddings_media_item_id', 'embeddings', ['media_item_id'])
    op.create_index('ix_embeddings_content_hash', 'embeddings', ['content_hash'])

    # HNSW (cosine) for nearest-neighbour search
    # m=16 (max connections per layer), ef_construction=64 (quality during build)
    op.execute("""
        CREATE INDEX ix_embeddings_vector_hnsw
        ON embeddings
        USING hnsw (vector vector_cosine_ops)
        WITH (m = 16, ef_construction = 64)
    """)

    # ================================
    # cost_records / budget_periods
    # ================================
    op.create_table(
        'cost_records',
        *_common_columns(),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('service', sa.String(length=100), nullable=False, comment='Provider service, e.g. rekognition, openai'),
        sa.Column('operation', sa.String(length=100), nullable=False, comment='Provider operation, e.g. detect_labels, embeddings'),
        sa.Column('amount', sa.Numeric(14, 6), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('period_key', sa.String(length=7), nullable=False, comment='Billing period, YYYY-MM'),
        sa.Column('succeeded', sa.Boolean(), nullable=False, comment='False when charged for an attempt that failed'),
        sa.Column('job_id', sa.Integer(), nullable=True),
        sa.Column('media_item_id', sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], name=op.f('fk_cost_records_user_id_users')),
        sa.ForeignKeyConstraint(['job_id'], ['processing_jobs.id'], name=op.f('fk_cost_records_job_id_processing_jobs'), ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['media_item_id'], ['media_items.id'], name=op.f('fk_cost_records_media_item_id_media_items'), ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_cost_records')),
    )
    op.create_index('ix_cost_records_user_id', 'cost_records', ['user_id'])
    op.create_index('ix_cost_records_period_key', 'cost_records', ['period_key'])
    op.create_index('ix_cost_records_job_id', 'cost_records', ['job_id'])

    op.create_table(
        'budget_periods',
        *_common_columns(),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('period_key', sa.String(length=7), nullable=False),
        sa.Column('spent', sa.Numeric(14, 6), nullable=False),
        sa.Column('reserved', sa.Numeric(14, 6), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], name=op.f('fk_budget_periods_user_id_users'), ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_budget_periods')),
        sa.UniqueConstraint('user_id', 'period_key', name='uq_budget_user_period'),
    )
    op.create_index('ix_budget_periods_user_id', 'budget_periods', ['user_id'])

    # ================================
    # search_history
    # ================================
    op.create_table(
        'search_history',
        *_common_columns(),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('query_text', sa.Text(), nullable=False),
        sa.Column('filters', _json(), nullable=False),
        sa.Column('limit', sa.Integer(), nullable=False),
        sa.Column('offset', sa.Integer(), nullable=False),
        sa.Column('result_count', sa.Integer(), nullable=False),
        sa.Column('cached', sa.Boolean(), nullable=False, comment='Served from the short-lived result cache'),
        sa.Column('latency_ms', sa.Float(), nullable=False),
        sa.Column('period_key', sa.String(length=7), nullable=False),
        sa.Column('top_media_ids', _json(), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], name=op.f('fk_search_history_user_id_users'), ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_search_history')),
    )
    op.execute(f'ALTER TABLE search_history ADD COLUMN query_embedding vector({EMBEDDING_DIMENSION})')
    op.create_index('ix_search_history_user_id', 'search_history', ['user_id'])
    op.create_index('ix_search_history_period_key', 'search_history', ['period_key'])


def downgrade() -> None:
    """Drop the media pipeline schema."""

    # Drop tables in reverse order (handle foreign key dependencies)
    op.drop_table('search_history')
    op.drop_table('budget_periods')
    op.drop_table('cost_records')
    op.drop_table('embeddings')
    op.drop_table('aggregated_contents')
    op.drop_table('analysis_results')
    op.drop_table('processing_jobs')
    op.drop_table('media_tags')
    op.drop_table('media_items')
    op.drop_table('users')

    bind = op.get_bind()
    for enum_type in (error_class, job_status, capability, media_status, media_kind, service_tier):
        enum_type.drop(bind, checkfirst=True)

    # Note: We don't drop the vector extension in downgrade
    # because other database objects might be using it
