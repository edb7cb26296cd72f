"""create_chat_tables

Revision ID: 5b7e2d1c9a40
Revises:
Create Date: 2026-10-18 00:00:00.000000
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '5b7e2d1c9a40'
down_revision = None
branch_labels = None
depends_on = None

session_status = sa.Enum('open', 'closed', name='chatsessionstatus')
sender_type = sa.Enum('visitor', 'admin', name='chatsendertype')


def upgrade():
    op.create_table(
        'chatsession',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('visitor_id', sa.String(length=255), nullable=False),
        sa.Column('visitor_name', sa.Text(), nullable=True),
        sa.Column('visitor_email', sa.String(length=255), nullable=True),
        sa.Column('status', session_status, nullable=False),
        sa.Column('last_message_at', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index(
        'ix_chatsession_visitor_id', 'chatsession', ['visitor_id']
    )
    op.create_index('ix_chatsession_status', 'chatsession', ['status'])
    op.create_index(
        'ix_chatsession_last_message_at', 'chatsession', ['last_message_at']
    )
    op.create_table(
        'chatmessage',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('session_id', sa.String(length=36), nullable=False),
        sa.Column('sender_type', sender_type, nullable=False),
        sa.Column('sender_name', sa.Text(), nullable=True),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(
            ['session_id'], ['chatsession.id'], ondelete='CASCADE'
        ),
    )
    op.create_index(
        'ix_chatmessage_session_id', 'chatmessage', ['session_id']
    )
    op.create_index(
        'ix_chatmessage_created_at', 'chatmessage', ['created_at']
    )


def downgrade():
    op.drop_table('chatmessage')
    op.drop_table('chatsession')
    sender_type.drop(op.get_bind(), checkfirst=True)
    session_status.drop(op.get_bind(), checkfirst=True)
