"""Create OAuth integration, state, PKCE verifier and audit log tables

Revision ID: 3c1d9a7e52b4
Revises:
Create Date: 2026-10-18 09:12:40.118327

"""
from alembic import op
import sqlalchemy as sa
import sqlmodel.sql.sqltypes

# revision identifiers, used by Alembic.
revision = '3c1d9a7e52b4'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table('user_integrations',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sqlmodel.sql.sqltypes.AutoString(length=255), nullable=False),
        sa.Column('service_name', sqlmodel.sql.sqltypes.AutoString(length=50), nullable=False),
        sa.Column('access_token_encrypted', sa.LargeBinary(), nullable=False),
        sa.Column('refresh_token_encrypted', sa.LargeBinary(), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('scopes', sqlmodel.sql.sqltypes.AutoString(length=1000), nullable=True),
        sa.Column('token_type', sqlmodel.sql.sqltypes.AutoString(length=50), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('connected_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('last_refreshed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'service_name', name='uq_user_integration_service')
    )
    op.create_index(op.f('ix_user_integrations_user_id'), 'user_integrations', ['user_id'], unique=False)
    op.create_index(op.f('ix_user_integrations_service_name'), 'user_integrations', ['service_name'], unique=False)
    op.create_index(op.f('ix_user_integrations_is_active'), 'user_integrations', ['is_active'], unique=False)

    op.create_table('oauth_states',
        sa.Column('state', sqlmodel.sql.sqltypes.AutoString(length=64), nullable=False),
        sa.Column('user_id', sqlmodel.sql.sqltypes.AutoString(length=255), nullable=False),
        sa.Column('target', sqlmodel.sql.sqltypes.AutoString(length=50), nullable=False),
        sa.Column('is_group', sa.Boolean(), nullable=False),
        sa.Column('redirect_uri', sqlmodel.sql.sqltypes.AutoString(length=500), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('state')
    )
    op.create_index(op.f('ix_oauth_states_user_id'), 'oauth_states', ['user_id'], unique=False)
    op.create_index(op.f('ix_oauth_states_created_at'), 'oauth_states', ['created_at'], unique=False)

    op.create_table('pkce_verifiers',
        sa.Column('state', sqlmodel.sql.sqltypes.AutoString(length=64), nullable=False),
        sa.Column('code_verifier', sqlmodel.sql.sqltypes.AutoString(length=128), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('state')
    )
    op.create_index(op.f('ix_pkce_verifiers_created_at'), 'pkce_verifiers', ['created_at'], unique=False)

    op.create_table('integration_audit_logs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sqlmodel.sql.sqltypes.AutoString(length=255), nullable=False),
        sa.Column('service_name', sqlmodel.sql.sqltypes.AutoString(length=50), nullable=False),
        sa.Column('action', sqlmodel.sql.sqltypes.AutoString(length=30), nullable=False),
        sa.Column('success', sa.Boolean(), nullable=False),
        sa.Column('detail', sqlmodel.sql.sqltypes.AutoString(length=500), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_integration_audit_logs_user_id'), 'integration_audit_logs', ['user_id'], unique=False)


def downgrade():
    op.drop_index(op.f('ix_integration_audit_logs_user_id'), table_name='integration_audit_logs')
    op.drop_table('integration_audit_logs')
    op.drop_index(op.f('ix_pkce_verifiers_created_at'), table_name='pkce_verifiers')
    op.drop_table('pkce_verifiers')
    op.drop_index(op.f('ix_oauth_states_created_at'), table_name='oauth_states')
    op.drop_index(op.f('ix_oauth_states_user_id'), table_name='oauth_states')
    op.drop_table('oauth_states')
    op.drop_index(op.f('ix_user_integrations_is_active'), table_name='user_integrations')
    op.drop_index(op.f('ix_user_integrations_service_name'), table_name='user_integrations')
    op.drop_index(op.f('ix_user_integrations_user_id'), table_name='user_integrations')
    op.drop_table('user_integrations')
