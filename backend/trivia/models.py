from trivia import db
from datetime import datetime, timezone
import json
import string
import random

SESSION_WAITING = 'waiting'
SESSION_RUNNING = 'running'
SESSION_FINISHED = 'finished'

JOIN_CODE_ALPHABET = 'ABCDEFGHJKLMNPQRSTUVWXYZ23456789'


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def generate_join_code(length=6):
    """Generate a unique, short join code."""
    while True:
        code = ''.join(random.choices(JOIN_CODE_ALPHABET, k=length))
        if not GameSession.query.filter_by(join_code=code).first():
            return code


class GameSession(db.Model):
    __tablename__ = 'game_session'
    id = db.Column(db.Integer, primary_key=True)
    join_code = db.Column(db.String(6), unique=True, index=True)
    status = db.Column(db.String(16), default=SESSION_WAITING, nullable=False)  # waiting, running, finished
    min_players = db.Column(db.Integer, nullable=False)
    max_players = db.Column(db.Integer, nullable=False)
    winner_identity_id = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    started_at = db.Column(db.DateTime, nullable=True)
    ended_at = db.Column(db.DateTime, nullable=True)
    players = db.relationship('SessionPlayer', back_populates='session', order_by='SessionPlayer.id')
    rounds = db.relationship('Round', back_populates='session', order_by='Round.number')

    # A single waiting session is the open join target
    __table_args__ = (
        db.Index(
            'uq_game_session_waiting', 'status', unique=True,
            sqlite_where=db.text("status = 'waiting'"),
            postgresql_where=db.text("status = 'waiting'"),
        ),
    )

    def __init__(self, **kwargs):
        super(GameSession, self).__init__(**kwargs)
        if not self.join_code:
            self.join_code = generate_join_code()

    def eligible_players(self):
        return [p for p in self.players if not p.eliminated]

    def player_for(self, identity_id):
        return next((p for p in self.players if p.identity_id == identity_id), None)

    def open_round(self):
        return next((r for r in self.rounds if r.ended_at is None), None)

    def to_dict(self, include_rounds=True):
        payload = {
            'id': self.id,
            'join_code': self.join_code,
            'status': self.status,
            'min_players': self.min_players,
            'max_players': self.max_players,
            'winner_identity_id': self.winner_identity_id,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'ended_at': self.ended_at.isoformat() if self.ended_at else None,
            'players': [p.to_dict() for p in self.players],
            'eligible_count': len(self.eligible_players()),
        }
        if include_rounds:
            payload['rounds'] = [r.to_dict() for r in self.rounds]
        return payload


class SessionPlayer(db.Model):
    __tablename__ = 'session_player'
    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(db.Integer, db.ForeignKey('game_session.id'), nullable=False, index=True)
    identity_id = db.Column(db.String(64), nullable=False, index=True)
    display_name = db.Column(db.String(64), nullable=False)
    connection_sid = db.Column(db.String(64), nullable=True)
    eliminated = db.Column(db.Boolean, default=False, nullable=False)
    score = db.Column(db.Integer, default=0, nullable=False)
    last_answer = db.Column(db.Text, nullable=True)  # JSON snapshot of the latest AnswerRecord
    session = db.relationship('GameSession', back_populates='players')

    __table_args__ = (
        db.UniqueConstraint('session_id', 'identity_id', name='uq_session_player_identity'),
    )

    def to_dict(self):
        return {
            'identity_id': self.identity_id,
            'display_name': self.display_name,
            'connected': self.connection_sid is not None,
            'eliminated': self.eliminated,
            'score': self.score,
            'last_answer': json.loads(self.last_answer) if self.last_answer else None,
        }


class Round(db.Model):
    __tablename__ = 'round'
    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(db.Integer, db.ForeignKey('game_session.id'), nullable=False, index=True)
    number = db.Column(db.Integer, nullable=False)
    question_id = db.Column(db.String(64), nullable=False)
    question_payload = db.Column(db.Text, nullable=False)  # JSON: statement, options, category
    correct_option_index = db.Column(db.Integer, nullable=False)
    time_budget_ms = db.Column(db.Integer, nullable=False)
    started_at = db.Column(db.DateTime, nullable=False)
    ended_at = db.Column(db.DateTime, nullable=True)
    session = db.relationship('GameSession', back_populates='rounds')
    answers = db.relationship('AnswerRecord', back_populates='round', order_by='AnswerRecord.id')

    __table_args__ = (
        db.UniqueConstraint('session_id', 'number', name='uq_round_number'),
        # At most one open round per session
        db.Index(
            'uq_round_open', 'session_id', unique=True,
            sqlite_where=db.text('ended_at IS NULL'),
            postgresql_where=db.text('ended_at IS NULL'),
        ),
    )

    @property
    def question(self):
        return json.loads(self.question_payload)

    def answer_for(self, identity_id):
        return next((a for a in self.answers if a.identity_id == identity_id), None)

    def remaining_ms(self, now):
        elapsed = (now - self.started_at).total_seconds() * 1000.0
        return max(0, int(self.time_budget_ms - elapsed))

    def to_dict(self):
        return {
            'id': self.id,
            'number': self.number,
            'question_id': self.question_id,
            'correct_option_index': self.correct_option_index if self.ended_at else None,
            'time_budget_ms': self.time_budget_ms,
            'started_at': self.started_at.isoformat(),
            'ended_at': self.ended_at.isoformat() if self.ended_at else None,
            'answers': [a.to_dict() for a in self.answers],
        }


class AnswerRecord(db.Model):
    __tablename__ = 'answer_record'
    id = db.Column(db.Integer, primary_key=True)
    round_id = db.Column(db.Integer, db.ForeignKey('round.id'), nullable=False, index=True)
    identity_id = db.Column(db.String(64), nullable=False)
    option_index = db.Column(db.Integer, nullable=False)
    correct = db.Column(db.Boolean, nullable=False)
    latency_ms = db.Column(db.Integer, nullable=False)
    client_latency_ms = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    round = db.relationship('Round', back_populates='answers')

    # First submission wins
    __table_args__ = (
        db.UniqueConstraint('round_id', 'identity_id', name='uq_answer_round_identity'),
    )

    def to_dict(self):
        return {
            'identity_id': self.identity_id,
            'option_index': self.option_index,
            'correct': self.correct,
            'latency_ms': self.latency_ms,
        }


class Question(db.Model):
    __tablename__ = 'question'
    id = db.Column(db.Integer, primary_key=True)
    category = db.Column(db.String(64), nullable=False, index=True)
    statement = db.Column(db.Text, nullable=False)
    options = db.Column(db.Text, nullable=False)  # JSON-encoded list of option strings
    correct_index = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    @staticmethod
    def is_valid_payload(data):
        if not isinstance(data, dict):
            return False
        options = data.get('options')
        correct = data.get('correct_index')
        return (
            bool(data.get('statement'))
            and bool(data.get('category'))
            and isinstance(options, list) and len(options) >= 2
            and isinstance(correct, int) and 0 <= correct < len(options)
        )

    @classmethod
    def from_dict(cls, data):
        return cls(
            category=data['category'],
            statement=data['statement'],
            options=json.dumps(list(data['options'])),
            correct_index=int(data['correct_index']),
        )

    def option_list(self):
        return json.loads(self.options)
