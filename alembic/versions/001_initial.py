"""Initial migration

Revision ID: 001_initial
Revises:
Create Date: 2026-01-05 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Source records table
    op.create_table(
        'source_records',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('source_id', sa.String(length=64), nullable=False),
        sa.Column('source_kind', sa.String(length=32), nullable=False),
        sa.Column('upc', sa.String(length=32), nullable=True),
        sa.Column('brand', sa.String(length=255), nullable=True),
        sa.Column('title', sa.Text(), nullable=True),
        sa.Column('caliber', sa.String(length=64), nullable=True),
        sa.Column('grain', sa.Integer(), nullable=True),
        sa.Column('round_count', sa.Integer(), nullable=True),
        sa.Column('raw_payload', postgresql.JSONB(), nullable=True),
        sa.Column('brand_norm', sa.String(length=255), nullable=True),
        sa.Column('caliber_norm', sa.String(length=64), nullable=True),
        sa.Column('upc_norm', sa.String(length=14), nullable=True),
        sa.Column('normalized_at', sa.DateTime(), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='PENDING'),
        sa.Column('processing_started_at', sa.DateTime(), nullable=True),
        sa.Column('claimed_by', sa.String(length=64), nullable=True),
        sa.Column('lease_token', sa.String(length=64), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )

    # Canonical products table
    op.create_table(
        'canonical_products',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('brand_norm', sa.String(length=255), nullable=True),
        sa.Column('caliber_norm', sa.String(length=64), nullable=True),
        sa.Column('grain', sa.Integer(), nullable=True),
        sa.Column('round_count', sa.Integer(), nullable=True),
        sa.Column('load_type', sa.String(length=32), nullable=True),
        sa.Column('shell_length', sa.String(length=16), nullable=True),
        sa.Column('identity_key', sa.String(length=255), nullable=True),
        sa.Column('upc_norm', sa.String(length=14), nullable=True),
        sa.Column('name', sa.Text(), nullable=True),
        sa.Column('specs', postgresql.JSONB(), nullable=True),
        sa.Column('created_by_resolver_version', sa.String(length=32), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )

    # Linkages table (append-only)
    op.create_table(
        'linkages',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('source_record_id', sa.Integer(), nullable=False),
        sa.Column('canonical_product_id', sa.Integer(), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('reason_code', sa.String(length=32), nullable=True),
        sa.Column('match_path', sa.String(length=32), nullable=False),
        sa.Column('confidence', sa.Float(), nullable=False),
        sa.Column('resolver_version', sa.String(length=32), nullable=False),
        sa.Column('evidence', postgresql.JSONB(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['source_record_id'], ['source_records.id'], ),
        sa.ForeignKeyConstraint(['canonical_product_id'], ['canonical_products.id'], )
    )

    # Source trust configs table
    op.create_table(
        'source_trust_configs',
        sa.Column('source_id', sa.String(length=64), nullable=False),
        sa.Column('upc_trusted', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('source_id')
    )

    # Brand aliases table
    op.create_table(
        'brand_aliases',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('alias_norm', sa.String(length=255), nullable=False),
        sa.Column('canonical_norm', sa.String(length=255), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='PENDING_REVIEW'),
        sa.Column('source_type', sa.String(length=32), nullable=False, server_default='MANUAL'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('alias_norm', name='uq_brand_alias_alias_norm')
    )

    # Create indexes
    op.create_index('ix_source_records_source_id', 'source_records', ['source_id'])
    op.create_index('ix_source_records_status_id', 'source_records', ['status', 'id'])
    op.create_index('ix_source_records_status_started', 'source_records', ['status', 'processing_started_at'])
    op.create_index('ix_canonical_products_caliber_norm', 'canonical_products', ['caliber_norm'])
    op.create_index(
        'uq_canonical_products_identity_key',
        'canonical_products',
        ['identity_key'],
        unique=True,
        postgresql_where=sa.text('identity_key IS NOT NULL'),
    )
    op.create_index('ix_canonical_products_upc_norm', 'canonical_products', ['upc_norm'])
    op.create_index('ix_linkages_source_record_id', 'linkages', ['source_record_id'])
    op.create_index('ix_linkages_canonical_product_id', 'linkages', ['canonical_product_id'])
    op.create_index('ix_linkages_resolver_version', 'linkages', ['resolver_version'])


def downgrade() -> None:
    # Drop indexes
    op.drop_index('ix_linkages_resolver_version', table_name='linkages')
    op.drop_index('ix_linkages_canonical_product_id', table_name='linkages')
    op.drop_index('ix_linkages_source_record_id', table_name='linkages')
    op.drop_index('ix_canonical_products_upc_norm', table_name='canonical_products')
    op.drop_index('uq_canonical_products_identity_key', table_name='canonical_products')
    op.drop_index('ix_canonical_products_caliber_norm', table_name='canonical_products')
    op.drop_index('ix_source_records_status_started', table_name='source_records')
    op.drop_index('ix_source_records_status_id', table_name='source_records')
    op.drop_index('ix_source_records_source_id', table_name='source_records')

    # Drop tables
    op.drop_table('brand_aliases')
    op.drop_table('source_trust_configs')
    op.drop_table('linkages')
    op.drop_table('canonical_products')
    op.drop_table('source_records')
