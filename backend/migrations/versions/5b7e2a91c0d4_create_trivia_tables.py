"""create session, player, round, answer and question tables

Revision ID: 5b7e2a91c0d4
Revises:
Create Date: 2026-10-18 00:00:00
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '5b7e2a91c0d4'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'game_session',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('join_code', sa.String(length=6), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='waiting'),
        sa.Column('min_players', sa.Integer(), nullable=False),
        sa.Column('max_players', sa.Integer(), nullable=False),
        sa.Column('winner_identity_id', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('ended_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_game_session_join_code', 'game_session', ['join_code'], unique=True)
    op.create_index(
        'uq_game_session_waiting', 'game_session', ['status'], unique=True,
        sqlite_where=sa.text("status = 'waiting'"),
        postgresql_where=sa.text("status = 'waiting'"),
    )

    op.create_table(
        'session_player',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('session_id', sa.Integer(), sa.ForeignKey('game_session.id'), nullable=False),
        sa.Column('identity_id', sa.String(length=64), nullable=False),
        sa.Column('display_name', sa.String(length=64), nullable=False),
        sa.Column('connection_sid', sa.String(length=64), nullable=True),
        sa.Column('eliminated', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('score', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_answer', sa.Text(), nullable=True),
        sa.UniqueConstraint('session_id', 'identity_id', name='uq_session_player_identity'),
    )
    op.create_index('ix_session_player_session_id', 'session_player', ['session_id'])
    op.create_index('ix_session_player_identity_id', 'session_player', ['identity_id'])

    op.create_table(
        'round',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('session_id', sa.Integer(), sa.ForeignKey('game_session.id'), nullable=False),
        sa.Column('number', sa.Integer(), nullable=False),
        sa.Column('question_id', sa.String(length=64), nullable=False),
        sa.Column('question_payload', sa.Text(), nullable=False),
        sa.Column('correct_option_index', sa.Integer(), nullable=False),
        sa.Column('time_budget_ms', sa.Integer(), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=False),
        sa.Column('ended_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('session_id', 'number', name='uq_round_number'),
    )
    op.create_index('ix_round_session_id', 'round', ['session_id'])
    op.create_index(
        'uq_round_open', 'round', ['session_id'], unique=True,
        sqlite_where=sa.text('ended_at IS NULL'),
        postgresql_where=sa.text('ended_at IS NULL'),
    )

    op.create_table(
        'answer_record',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('round_id', sa.Integer(), sa.ForeignKey('round.id'), nullable=False),
        sa.Column('identity_id', sa.String(length=64), nullable=False),
        sa.Column('option_index', sa.Integer(), nullable=False),
        sa.Column('correct', sa.Boolean(), nullable=False),
        sa.Column('latency_ms', sa.Integer(), nullable=False),
        sa.Column('client_latency_ms', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('round_id', 'identity_id', name='uq_answer_round_identity'),
    )
    op.create_index('ix_answer_record_round_id', 'answer_record', ['round_id'])

    op.create_table(
        'question',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('category', sa.String(length=64), nullable=False),
        sa.Column('statement', sa.Text(), nullable=False),
        sa.Column('options', sa.Text(), nullable=False),
        sa.Column('correct_index', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_question_category', 'question', ['category'])


def downgrade():
    op.drop_table('question')
    op.drop_table('answer_record')
    op.drop_index('uq_round_open', table_name='round')
    op.drop_table('round')
    op.drop_table('session_player')
    op.drop_index('uq_game_session_waiting', table_name='game_session')
    op.drop_table('game_session')
