"""Initial integration schema.

Revision ID: a1f0c3d9e2b7
Revises:
Create Date: 2026-10-17
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = 'a1f0c3d9e2b7'
down_revision = None
branch_labels = None
depends_on = None


def _json():
    return sa.JSON().with_variant(postgresql.JSONB(), 'postgresql')


def _base_columns():
    return [
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('rec_seq', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('rec_status', sa.String(length=1), nullable=False, server_default='A'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade() -> None:
    op.create_table(
        'user',
        *_base_columns(),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('phone_number', sa.String(length=32), nullable=False, server_default=''),
        sa.Column('first_name', sa.String(length=50), nullable=True),
        sa.Column('last_name', sa.String(length=50), nullable=True),
        sa.Column('username', sa.String(length=50), nullable=True),
        sa.Column('date_of_birth', sa.Date(), nullable=True),
        sa.Column('gender', sa.String(length=32), nullable=True),
        sa.Column('is_profile_complete', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_user_email', 'user', ['email'], unique=False)

    op.create_table(
        'integration',
        *_base_columns(),
        sa.Column('name', sa.String(length=50), nullable=False),
        sa.Column('label', sa.String(length=50), nullable=True),
        sa.Column('popularity', sa.Integer(), nullable=True, server_default='0'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_integration_name', 'integration', ['name'], unique=True)

    op.create_table(
        'user_integration',
        *_base_columns(),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('integration_id', sa.Uuid(), nullable=False),
        sa.Column('status', sa.String(length=50), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['user.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['integration_id'], ['integration.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'integration_id', name='uq_user_integration'),
    )
    op.create_index('ix_user_integration_user_id', 'user_integration', ['user_id'], unique=False)
    op.create_index('ix_user_integration_integration_id', 'user_integration', ['integration_id'], unique=False)
    op.create_index('idx_user_integration_status', 'user_integration', ['status'], unique=False)

    op.create_table(
        'user_integration_history',
        *_base_columns(),
        sa.Column('user_integration_id', sa.Uuid(), nullable=False),
        sa.Column('first_connected_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_connected_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_synced_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['user_integration_id'], ['user_integration.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_integration_id'),
    )

    op.create_table(
        'oauth_credential',
        *_base_columns(),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('provider', sa.String(length=50), nullable=False),
        sa.Column('access_token_encrypted', sa.Text(), nullable=False),
        sa.Column('refresh_token_encrypted', sa.Text(), nullable=True),
        sa.Column('expires_at', sa.Integer(), nullable=False),
        sa.Column('scope', sa.Text(), nullable=True),
        sa.Column('provider_user_id', sa.String(length=255), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['user.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'provider', name='uq_oauth_credential_user_provider'),
    )
    op.create_index('ix_oauth_credential_user_id', 'oauth_credential', ['user_id'], unique=False)
    op.create_index('ix_oauth_credential_provider', 'oauth_credential', ['provider'], unique=False)

    op.create_table(
        'location_data_submission',
        *_base_columns(),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('integration_id', sa.Uuid(), nullable=False),
        sa.Column('location_data', _json(), nullable=False),
        sa.Column('submitted_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('processed', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['user.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['integration_id'], ['integration.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(
        'idx_location_submission_user_processed', 'location_data_submission',
        ['user_id', 'integration_id', 'processed'], unique=False,
    )

    op.create_table(
        'list',
        *_base_columns(),
        sa.Column('name', sa.String(length=50), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_list_name', 'list', ['name'], unique=True)

    op.create_table(
        'user_list',
        *_base_columns(),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('list_id', sa.Uuid(), nullable=False),
        sa.Column('custom_name', sa.String(length=50), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['user.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['list_id'], ['list.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'list_id', name='uq_user_list'),
    )
    op.create_index('ix_user_list_user_id', 'user_list', ['user_id'], unique=False)

    op.create_table(
        'item_category',
        *_base_columns(),
        sa.Column('list_id', sa.Uuid(), nullable=False),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.ForeignKeyConstraint(['list_id'], ['list.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('list_id', 'name', name='uq_item_category_list_name'),
    )

    op.create_table(
        'list_item',
        *_base_columns(),
        sa.Column('list_id', sa.Uuid(), nullable=False),
        sa.Column('user_list_id', sa.Uuid(), nullable=False),
        sa.Column('category_id', sa.Uuid(), nullable=True),
        sa.Column('title', sa.String(length=500), nullable=False),
        sa.Column('notes', sa.String(length=500), nullable=True),
        sa.Column('starred', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('attributes', _json(), nullable=False),
        sa.Column('attribute_data_type', _json(), nullable=False),
        sa.Column('external_provider', sa.String(length=50), nullable=True),
        sa.Column('external_id', sa.String(length=255), nullable=True),
        sa.ForeignKeyConstraint(['list_id'], ['list.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['user_list_id'], ['user_list.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['category_id'], ['item_category.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint(
            'list_id', 'user_list_id', 'title', 'external_provider', 'external_id',
            name='uq_list_item_external_identity',
        ),
    )
    op.create_index('ix_list_item_user_list_id', 'list_item', ['user_list_id'], unique=False)
    op.create_index('idx_list_item_external', 'list_item', ['external_provider', 'external_id'], unique=False)
    op.create_index('idx_list_item_category', 'list_item', ['category_id'], unique=False)


def downgrade() -> None:
    for table in (
        'list_item', 'item_category', 'user_list', 'list',
        'location_data_submission', 'oauth_credential',
        'user_integration_history', 'user_integration', 'integration', 'user',
    ):
        op.drop_table(table)
