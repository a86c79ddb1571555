"""Session lifecycle: WAITING -> COUNTDOWN -> RUNNING -> FINISHED."""

from datetime import timedelta
import threading
from typing import List, Optional, Set

from trivia.auth import Identity
from trivia.errors import CapacityExceeded, PersistenceFailure
from trivia.models import SESSION_WAITING
from trivia.services.rounds import epoch_ms


def countdown_key(session_id: int):
    return ('countdown', session_id)


class LifecycleController:
    def __init__(self, app, store, registry, scheduler, notifier, questions, timers, clock):
        self.app = app
        self.store = store
        self.registry = registry
        self.scheduler = scheduler
        self.notifier = notifier
        self.questions = questions
        self.timers = timers
        self.clock = clock
        self._countdowns: Set[int] = set()
        self._lock = threading.Lock()
        scheduler.on_reverted = self.readmit_players
        scheduler.on_finished = self._forget_session

    @property
    def log(self):
        return self.app.logger

    @property
    def min_players(self) -> int:
        return self.registry.min_players

    # ---- joining and leaving ----

    def join_waiting_room(self, identity: Identity, sid: Optional[str] = None):
        """Put ``identity`` in the waiting room, or back into the session it is already playing."""
        for _ in range(3):
            running = self.store.find_running_for_identity(identity.id)
            if running is not None:
                self.reconnect(identity, running, sid)
                return running

            session = self.store.open_waiting_session(self.registry.min_players, self.registry.max_players)
            # Serialized against fire_countdown so a join never lands between snapshot and drop
            with self.scheduler.locks.hold(session.id):
                if self.store.current_status(session.id) != SESSION_WAITING:
                    self.log.info(f"[lobby-join-retry] session={session.id} started before {identity.id} got in")
                    continue
                if sid:
                    self.notifier.subscribe(sid, session.id)
                try:
                    count = self.registry.join(identity, session.id, sid)
                except CapacityExceeded as exc:
                    if sid:
                        self.notifier.unsubscribe(sid, session.id)
                    self.notifier.to_identity(identity.id, 'lobby_full', {'sessionId': session.id, 'max': exc.max_players})
                    self.log.info(f"[lobby-full] session={session.id} identity={identity.id}")
                    raise
                self.log.info(f"[lobby-join] session={session.id} identity={identity.id} players={count}/{self.min_players}")
                self.check_quorum(session.id, count)
                return session
        raise PersistenceFailure(f"no waiting session accepted {identity.id}")

    def reconnect(self, identity: Identity, session, sid: Optional[str]) -> None:
        if sid:
            self.store.attach_connection(session.id, identity.id, sid)
            self.notifier.subscribe(sid, session.id)
        self.log.info(f"[reconnect] session={session.id} identity={identity.id}")
        self.notifier.to_identity(identity.id, 'session_started', {
            'sessionId': session.id,
            'joinCode': session.join_code,
            'reconnected': True,
        })
        self.scheduler.resync(identity.id, session.id)

    def leave_waiting_room(self, identity_id: str) -> List[int]:
        left = self.registry.leave_everywhere(identity_id)
        for session_id in left:
            self.log.info(f"[lobby-leave] session={session_id} identity={identity_id}")
        return left

    def handle_disconnect(self, identity_id: str, sid: str) -> None:
        """Drop live presence; a running player stays eligible until a round times out on them."""
        self.registry.leave_everywhere(identity_id, sid)
        detached = self.store.detach_connection(identity_id, sid)
        if detached:
            self.log.info(f"[disconnect] identity={identity_id} detached from running session")

    # ---- countdown ----

    def countdown_pending(self, session_id: int) -> bool:
        with self._lock:
            return session_id in self._countdowns

    def check_quorum(self, session_id: int, count: Optional[int] = None) -> bool:
        """Schedule the start countdown once quorum is reached; no-op while one is pending."""
        count = self.registry.size(session_id) if count is None else count
        if count < self.min_players:
            return False
        with self._lock:
            if session_id in self._countdowns:
                return False
            self._countdowns.add(session_id)
        delay = int(self.app.config.get('START_DELAY_MS', 15000))
        target = self.clock() + timedelta(milliseconds=delay)
        self.timers.schedule(countdown_key(session_id), delay, self.fire_countdown, session_id)
        self.notifier.broadcast(session_id, 'lobby_starting', {
            'sessionId': session_id,
            'delayMs': delay,
            'targetStartTime': epoch_ms(target),
        })
        self.log.info(f"[countdown-set] session={session_id} players={count} delay={delay}ms")
        return True

    def fire_countdown(self, session_id: int) -> bool:
        """Start the session if quorum still holds; otherwise fall back to waiting."""
        with self._lock:
            self._countdowns.discard(session_id)
        with self.scheduler.locks.hold(session_id):
            session = self.store.get(session_id)
            if not session or session.status != SESSION_WAITING:
                self.log.info(f"[countdown-abort] session={session_id} no longer waiting")
                return False
            count = self.registry.size(session_id)
            if count < self.min_players:
                self.log.info(f"[countdown-abort] session={session_id} not enough players ({count}/{self.min_players})")
                self.registry.broadcast_count(session_id, count)
                return False
            if self.questions.count_available() <= 0:
                self.log.warning(f"[no-questions] session={session_id} start aborted, question pool is empty")
                self.notifier.broadcast(session_id, 'no_questions', {
                    'sessionId': session_id,
                    'message': 'No questions available. Back to the waiting room.',
                })
                return False

            members = self.registry.members(session_id)
            fresh = self.registry.reconcile(session_id, [p.identity_id for p in session.players])
            handles = {m.identity.id: m.sid for m in members}
            if not self.store.start_session(session_id, fresh, handles, self.clock()):
                self.log.info(f"[session-start-skip] session={session_id} already started")
                return False
            self.registry.drop(session_id)
            self.log.info(f"[session-start] session={session_id} players={len(members)}")
            self.notifier.broadcast(session_id, 'session_started', {
                'sessionId': session_id,
                'joinCode': session.join_code,
            })
        self.scheduler.start(session_id)
        return True

    # ---- scheduler callbacks ----

    def readmit_players(self, session_id: int) -> None:
        """A session sent back to waiting takes its connected, eligible players back into the registry."""
        session = self.store.get(session_id)
        if not session:
            return
        for player in session.eligible_players():
            if player.connection_sid is None:
                continue
            try:
                self.registry.join(Identity(id=player.identity_id, name=player.display_name),
                                   session_id, player.connection_sid)
            except CapacityExceeded:
                self.log.warning(f"[readmit] session={session_id} identity={player.identity_id} over capacity")
        self.check_quorum(session_id)

    def _forget_session(self, session_id: int) -> None:
        self.registry.drop(session_id)
        with self._lock:
            self._countdowns.discard(session_id)
        self.scheduler.locks.discard(session_id)

    # ---- crash recovery ----

    def recover_sessions(self) -> List[int]:
        """Resume every running session from the durable record."""
        session_ids = self.store.running_session_ids()
        for session_id in session_ids:
            self.scheduler.resume(session_id)
        if session_ids:
            self.log.info(f"[recover] resumed sessions={session_ids}")
        return session_ids
