"""Game engine services: membership, store, rounds, lifecycle, timers.

This package contains the domain logic imported by socket handlers and
HTTP routes, keeping transport concerns separated from core game mechanics.
"""

from flask import current_app

from trivia.auth import verify
from trivia.models import utcnow
from trivia.services.lifecycle import LifecycleController
from trivia.services.membership import MembershipRegistry
from trivia.services.notifier import Notifier
from trivia.services.questions import SqlQuestionBank, StoredNames
from trivia.services.rounds import RoundScheduler, SessionLocks
from trivia.services.store import SessionStore
from trivia.services.timers import BackgroundTimers


class TriviaEngine:
    def __init__(self, app, socketio, timers=None, questions=None, names=None,
                 notifier=None, clock=None, verifier=None):
        cfg = app.config
        self.clock = clock or utcnow
        self.verifier = verifier or verify
        self.notifier = notifier or Notifier(socketio)
        self.timers = timers or BackgroundTimers(app, socketio)
        self.questions = questions or SqlQuestionBank()
        self.names = names or StoredNames()
        self.store = SessionStore(app)
        self.locks = SessionLocks()
        self.registry = MembershipRegistry(
            self.notifier,
            int(cfg.get('MIN_PLAYERS', 2)),
            int(cfg.get('MAX_PLAYERS', 100)),
        )
        self.scheduler = RoundScheduler(
            app, self.store, self.notifier, self.questions, self.names,
            self.timers, self.locks, self.clock,
        )
        self.lifecycle = LifecycleController(
            app, self.store, self.registry, self.scheduler, self.notifier,
            self.questions, self.timers, self.clock,
        )


def init_engine(app, **overrides) -> TriviaEngine:
    from trivia import socketio
    engine = TriviaEngine(app, socketio, **overrides)
    app.extensions['trivia'] = engine
    return engine


def get_engine() -> TriviaEngine:
    return current_app.extensions['trivia']
