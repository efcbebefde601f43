"""create saved_match and match_record

Revision ID: a3c9e1f07b52
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'a3c9e1f07b52'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table('saved_match',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('room', sa.String(length=5), nullable=False),
        sa.Column('snapshot_json', sa.Text(), nullable=False),
        sa.Column('settings_json', sa.Text(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('room')
    )
    op.create_table('match_record',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('game_id', sa.String(length=8), nullable=False),
        sa.Column('rules', sa.String(length=10), nullable=False),
        sa.Column('winner', sa.String(length=1), nullable=True),
        sa.Column('is_draw', sa.Boolean(), nullable=False),
        sa.Column('move_history_json', sa.Text(), nullable=True),
        sa.Column('timestamp', sa.DateTime(), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('game_id')
    )


def downgrade():
    op.drop_table('match_record')
    op.drop_table('saved_match')
