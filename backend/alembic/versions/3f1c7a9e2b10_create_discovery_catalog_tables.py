"""create discovery, pulsemcp, catalog and health tables

Revision ID: 3f1c7a9e2b10
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '3f1c7a9e2b10'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # GitHub discovery
    op.create_table('repositories',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('full_name', sa.String(length=255), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('owner', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('url', sa.String(length=512), nullable=False),
        sa.Column('clone_url', sa.String(length=512), nullable=True),
        sa.Column('ssh_url', sa.String(length=512), nullable=True),
        sa.Column('language', sa.String(length=100), nullable=True),
        sa.Column('stars', sa.Integer(), nullable=False),
        sa.Column('forks', sa.Integer(), nullable=False),
        sa.Column('watchers', sa.Integer(), nullable=False),
        sa.Column('size', sa.Integer(), nullable=False),
        sa.Column('topics', sa.JSON(), nullable=False),
        sa.Column('license', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.Column('pushed_at', sa.DateTime(), nullable=True),
        sa.Column('archived', sa.Boolean(), nullable=False),
        sa.Column('fork', sa.Boolean(), nullable=False),
        sa.Column('discovered_at', sa.DateTime(), nullable=False),
        sa.Column('last_analyzed_at', sa.DateTime(), nullable=True),
        sa.Column('search_pattern', sa.String(length=255), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('repositories', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_repositories_full_name'), ['full_name'], unique=True)
        batch_op.create_index(batch_op.f('ix_repositories_owner'), ['owner'], unique=False)

    op.create_table('mcp_analysis',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('repository_id', sa.Integer(), nullable=False),
        sa.Column('confidence', sa.Float(), nullable=False),
        sa.Column('confidence_level', sa.String(length=20), nullable=False),
        sa.Column('is_mcp', sa.Boolean(), nullable=False),
        sa.Column('server_type', sa.String(length=50), nullable=True),
        sa.Column('capabilities', sa.JSON(), nullable=False),
        sa.Column('indicators', sa.JSON(), nullable=False),
        sa.Column('analysis_version', sa.String(length=20), nullable=True),
        sa.Column('analyzed_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['repository_id'], ['repositories.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('mcp_analysis', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_mcp_analysis_repository_id'), ['repository_id'], unique=True)
        batch_op.create_index(batch_op.f('ix_mcp_analysis_is_mcp'), ['is_mcp'], unique=False)

    op.create_table('mcp_detection',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('repository_id', sa.Integer(), nullable=False),
        sa.Column('detection_confidence', sa.Float(), nullable=False),
        sa.Column('detection_level', sa.String(length=20), nullable=False),
        sa.Column('classification', sa.String(length=50), nullable=False),
        sa.Column('positive_indicators', sa.JSON(), nullable=False),
        sa.Column('negative_indicators', sa.JSON(), nullable=False),
        sa.Column('edge_cases', sa.JSON(), nullable=False),
        sa.Column('reasons', sa.JSON(), nullable=False),
        sa.Column('detection_version', sa.String(length=20), nullable=True),
        sa.Column('detected_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['repository_id'], ['repositories.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('mcp_detection', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_mcp_detection_repository_id'), ['repository_id'], unique=True)

    op.create_table('package_info',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('repository_id', sa.Integer(), nullable=False),
        sa.Column('package_name', sa.String(length=255), nullable=True),
        sa.Column('version', sa.String(length=100), nullable=True),
        sa.Column('main_file', sa.String(length=255), nullable=True),
        sa.Column('installation_method', sa.String(length=50), nullable=True),
        sa.Column('dependencies', sa.JSON(), nullable=False),
        sa.Column('dev_dependencies', sa.JSON(), nullable=False),
        sa.Column('scripts', sa.JSON(), nullable=False),
        sa.Column('bin', sa.JSON(), nullable=True),
        sa.Column('extracted_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['repository_id'], ['repositories.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('package_info', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_package_info_repository_id'), ['repository_id'], unique=True)

    op.create_table('repository_files',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('repository_id', sa.Integer(), nullable=False),
        sa.Column('filename', sa.String(length=255), nullable=False),
        sa.Column('file_type', sa.String(length=50), nullable=True),
        sa.Column('size', sa.Integer(), nullable=True),
        sa.Column('content_hash', sa.String(length=64), nullable=True),
        sa.Column('analyzed', sa.Boolean(), nullable=False),
        sa.Column('mcp_relevant', sa.Boolean(), nullable=False),
        sa.Column('extracted_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['repository_id'], ['repositories.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('repository_id', 'filename', name='uq_repository_files_repo_filename')
    )
    with op.batch_alter_table('repository_files', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_repository_files_repository_id'), ['repository_id'], unique=False)

    op.create_table('discovery_runs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('run_id', sa.String(length=128), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('repositories_found', sa.Integer(), nullable=False),
        sa.Column('repositories_analyzed', sa.Integer(), nullable=False),
        sa.Column('mcp_servers_detected', sa.Integer(), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('configuration', sa.JSON(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('discovery_runs', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_discovery_runs_run_id'), ['run_id'], unique=True)

    op.create_table('metadata',
        sa.Column('key', sa.String(length=255), nullable=False),
        sa.Column('value', sa.Text(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('key')
    )

    # PulseMCP mirror
    op.create_table('pulsemcp_servers',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('server_id', sa.String(length=255), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('category', sa.String(length=100), nullable=True),
        sa.Column('language', sa.String(length=100), nullable=True),
        sa.Column('capabilities', sa.JSON(), nullable=False),
        sa.Column('version', sa.String(length=100), nullable=True),
        sa.Column('author', sa.String(length=255), nullable=True),
        sa.Column('repository', sa.String(length=512), nullable=True),
        sa.Column('verified', sa.Boolean(), nullable=False),
        sa.Column('active', sa.Boolean(), nullable=False),
        sa.Column('health_score', sa.Integer(), nullable=True),
        sa.Column('health_trend', sa.String(length=20), nullable=False),
        sa.Column('downloads', sa.Integer(), nullable=False),
        sa.Column('stars', sa.Integer(), nullable=False),
        sa.Column('installation_method', sa.String(length=50), nullable=True),
        sa.Column('installation_command', sa.String(length=512), nullable=True),
        sa.Column('last_updated_upstream', sa.DateTime(), nullable=True),
        sa.Column('synced_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('pulsemcp_servers', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_pulsemcp_servers_server_id'), ['server_id'], unique=True)
        batch_op.create_index(batch_op.f('ix_pulsemcp_servers_category'), ['category'], unique=False)

    op.create_table('pulsemcp_categories',
        sa.Column('id', sa.String(length=100), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('server_count', sa.Integer(), nullable=False),
        sa.Column('last_updated', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )

    op.create_table('pulsemcp_health_history',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('server_id', sa.String(length=255), nullable=False),
        sa.Column('health_score', sa.Integer(), nullable=False),
        sa.Column('recorded_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['server_id'], ['pulsemcp_servers.server_id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('pulsemcp_health_history', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_pulsemcp_health_history_server_id'), ['server_id'], unique=False)

    op.create_table('pulsemcp_sync_history',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('sync_id', sa.String(length=128), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=False),
        sa.Column('servers_total', sa.Integer(), nullable=False),
        sa.Column('servers_new', sa.Integer(), nullable=False),
        sa.Column('servers_updated', sa.Integer(), nullable=False),
        sa.Column('servers_skipped', sa.Integer(), nullable=False),
        sa.Column('categories_processed', sa.Integer(), nullable=False),
        sa.Column('errors', sa.JSON(), nullable=False),
        sa.Column('warnings', sa.JSON(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('pulsemcp_sync_history', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_pulsemcp_sync_history_sync_id'), ['sync_id'], unique=True)

    # Merged catalog
    op.create_table('merged_servers',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('github_id', sa.Integer(), nullable=True),
        sa.Column('pulsemcp_id', sa.Integer(), nullable=True),
        sa.Column('pulsemcp_server_id', sa.String(length=255), nullable=True),
        sa.Column('server_key', sa.String(length=300), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('repository_url', sa.String(length=512), nullable=True),
        sa.Column('clone_url', sa.String(length=512), nullable=True),
        sa.Column('full_name', sa.String(length=255), nullable=True),
        sa.Column('owner', sa.String(length=255), nullable=True),
        sa.Column('language', sa.String(length=100), nullable=True),
        sa.Column('version', sa.String(length=100), nullable=True),
        sa.Column('capabilities', sa.JSON(), nullable=False),
        sa.Column('server_type', sa.String(length=50), nullable=True),
        sa.Column('category', sa.String(length=100), nullable=True),
        sa.Column('confidence', sa.Integer(), nullable=False),
        sa.Column('verified', sa.Boolean(), nullable=False),
        sa.Column('health_score', sa.Integer(), nullable=True),
        sa.Column('health_trend', sa.String(length=20), nullable=True),
        sa.Column('health_status', sa.String(length=20), nullable=False),
        sa.Column('reliability_score', sa.Integer(), nullable=False),
        sa.Column('health_updated_at', sa.DateTime(), nullable=True),
        sa.Column('github_stars', sa.Integer(), nullable=False),
        sa.Column('pulsemcp_stars', sa.Integer(), nullable=False),
        sa.Column('combined_stars', sa.Integer(), nullable=False),
        sa.Column('downloads', sa.Integer(), nullable=False),
        sa.Column('forks', sa.Integer(), nullable=False),
        sa.Column('installation_method', sa.String(length=50), nullable=True),
        sa.Column('installation_command', sa.String(length=512), nullable=True),
        sa.Column('package_name', sa.String(length=255), nullable=True),
        sa.Column('topics', sa.JSON(), nullable=False),
        sa.Column('match_score', sa.Float(), nullable=True),
        sa.Column('match_reasons', sa.JSON(), nullable=False),
        sa.Column('data_sources', sa.String(length=50), nullable=False),
        sa.Column('github_discovered_at', sa.DateTime(), nullable=True),
        sa.Column('github_analyzed_at', sa.DateTime(), nullable=True),
        sa.Column('pulsemcp_synced_at', sa.DateTime(), nullable=True),
        sa.Column('last_updated', sa.DateTime(), nullable=True),
        sa.Column('merged_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('merged_servers', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_merged_servers_github_id'), ['github_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_merged_servers_pulsemcp_server_id'), ['pulsemcp_server_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_merged_servers_server_key'), ['server_key'], unique=True)
        batch_op.create_index(batch_op.f('ix_merged_servers_confidence'), ['confidence'], unique=False)

    # Health monitoring
    op.create_table('health_measurements',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('server_key', sa.String(length=300), nullable=False),
        sa.Column('health_score', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('response_time', sa.Integer(), nullable=True),
        sa.Column('source', sa.String(length=20), nullable=False),
        sa.Column('factors', sa.JSON(), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('measured_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('health_measurements', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_health_measurements_server_key'), ['server_key'], unique=False)
        batch_op.create_index(batch_op.f('ix_health_measurements_measured_at'), ['measured_at'], unique=False)

    op.create_table('health_alerts',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('server_key', sa.String(length=300), nullable=False),
        sa.Column('server_name', sa.String(length=255), nullable=False),
        sa.Column('severity', sa.String(length=20), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('health_score', sa.Integer(), nullable=True),
        sa.Column('reliability_score', sa.Integer(), nullable=True),
        sa.Column('acknowledged', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('acknowledged_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('health_alerts', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_health_alerts_server_key'), ['server_key'], unique=False)
        batch_op.create_index(batch_op.f('ix_health_alerts_created_at'), ['created_at'], unique=False)


def downgrade() -> None:
    for table in (
        'health_alerts',
        'health_measurements',
        'merged_servers',
        'pulsemcp_sync_history',
        'pulsemcp_health_history',
        'pulsemcp_categories',
        'pulsemcp_servers',
        'metadata',
        'discovery_runs',
        'repository_files',
        'package_info',
        'mcp_detection',
        'mcp_analysis',
        'repositories',
    ):
        op.drop_table(table)
