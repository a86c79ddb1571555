import os
import sys
import random
from datetime import datetime, timedelta
import pytest

# Ensure the backend root (containing the `trivia` package) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
BACKEND_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if BACKEND_ROOT not in sys.path:
    sys.path.insert(0, BACKEND_ROOT)

from trivia import create_app, db
from trivia.auth import Identity
from trivia.services import get_engine
from trivia.services.questions import InMemoryQuestionBank, QuestionView


class TestConfig:
    TESTING = True
    SECRET_KEY = os.environ.get('SECRET_KEY', 'test-secret')
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    JWT_SECRET = 'test-jwt-secret'
    JWT_ALGORITHM = 'HS256'
    MIN_PLAYERS = 2
    MAX_PLAYERS = 3
    QUESTION_TIME_MS = 5000
    START_DELAY_MS = 15000
    BETWEEN_ROUNDS_DELAY_MS = 5000
    FIRST_ROUND_DELAY_MS = 300
    RECOVERY_DELAY_MS = 2000
    RECENT_QUESTION_WINDOW = 2
    PERSIST_RETRIES = 2
    PERSIST_RETRY_DELAY_MS = 0
    TIMER_HEARTBEAT_SEC = 0


class ManualTimers:
    """Timer fake: callbacks run only when a test fires them."""

    def __init__(self):
        self.pending = {}
        self.history = []

    def schedule(self, key, delay_ms, fn, *args):
        self.pending[key] = (delay_ms, fn, args)
        self.history.append((key, delay_ms))

    def cancel(self, key):
        return self.pending.pop(key, None) is not None

    def cancel_session(self, session_id):
        for key in [k for k in self.pending if k[1] == session_id]:
            del self.pending[key]

    def is_pending(self, key):
        return key in self.pending

    def delay_of(self, key):
        return self.pending[key][0]

    def keys(self, kind):
        return [k for k in self.pending if k[0] == kind]

    def fire(self, key):
        _, fn, args = self.pending.pop(key)
        return fn(*args)


class FakeClock:
    def __init__(self, start=datetime(2026, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, ms):
        self.now += timedelta(milliseconds=ms)


class RecordingNotifier:
    def __init__(self):
        self.events = []
        self.subscriptions = []

    def broadcast(self, session_id, event, payload=None):
        self.events.append(('session', session_id, event, payload or {}))

    def to_identity(self, identity_id, event, payload=None):
        self.events.append(('identity', identity_id, event, payload or {}))

    def subscribe(self, sid, session_id):
        self.subscriptions.append((sid, session_id))

    def unsubscribe(self, sid, session_id):
        self.subscriptions.remove((sid, session_id))

    def named(self, event, target=None):
        return [e[3] for e in self.events if e[2] == event and (target is None or e[1] == target)]

    def clear(self):
        self.events.clear()


def make_questions():
    return [
        QuestionView(id='q1', statement='2 + 2?', options=['3', '4', '5'], category='math', correct_index=1),
        QuestionView(id='q2', statement='Capital of France?', options=['Paris', 'Rome'], category='geography', correct_index=0),
        QuestionView(id='q3', statement='H2O is?', options=['Salt', 'Water', 'Air'], category='science', correct_index=1),
    ]


def player(n):
    return Identity(id=f'p{n}', name=f'Player {n}')


@pytest.fixture()
def timers():
    return ManualTimers()


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def notifier():
    return RecordingNotifier()


@pytest.fixture()
def questions():
    return InMemoryQuestionBank(make_questions(), rng=random.Random(7))


@pytest.fixture()
def flask_app(timers, clock, notifier, questions):
    application = create_app(TestConfig, timers=timers, clock=clock, notifier=notifier, questions=questions)
    with application.app_context():
        # Ensure models are imported so tables are created
        import trivia.models  # noqa: F401
        db.create_all()
        yield application
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def engine(flask_app):
    return get_engine()


@pytest.fixture()
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture()
def start_session(engine, timers):
    """Join the given identities, fire the countdown and open the first round."""
    def _start(*identities):
        session = None
        for identity in identities:
            session = engine.lifecycle.join_waiting_room(identity)
        session_id = session.id
        timers.fire(('countdown', session_id))
        timers.fire(('next-round', session_id))
        return session_id
    return _start
