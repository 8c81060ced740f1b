"""Create security_events audit table

Revision ID: 001_security_events
Revises:
Create Date: 2026-10-16 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001_security_events'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'security_events',
        sa.Column('id', sa.String(32), primary_key=True),
        sa.Column('event_type', sa.String(64), nullable=False),
        sa.Column('severity', sa.String(16), nullable=False),
        sa.Column('client_ip', sa.String(64), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )

    op.create_index('ix_security_events_event_type', 'security_events', ['event_type'])
    op.create_index('ix_security_events_severity', 'security_events', ['severity'])
    op.create_index('ix_security_events_client_ip', 'security_events', ['client_ip'])
    op.create_index('ix_security_events_created_at', 'security_events', ['created_at'])
    op.create_index('ix_security_events_severity_created_at', 'security_events', ['severity', 'created_at'])


def downgrade() -> None:
    op.drop_index('ix_security_events_severity_created_at', table_name='security_events')
    op.drop_index('ix_security_events_created_at', table_name='security_events')
    op.drop_index('ix_security_events_client_ip', table_name='security_events')
    op.drop_index('ix_security_events_severity', table_name='security_events')
    op.drop_index('ix_security_events_event_type', table_name='security_events')
    op.drop_table('security_events')
