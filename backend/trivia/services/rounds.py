"""Round scheduler: dispatch, collect, close, advance.

Two triggers may close a round: the per-round timer and the last eligible
answer. Both go through ``close_round``, which relies on the store's
conditional close; whichever runs second finds the round already closed and
does nothing. Transitions for one session are additionally serialized by a
per-session lock.
"""

from contextlib import contextmanager
from datetime import datetime
import threading
from typing import Callable, Dict, Optional, Set

from trivia.errors import (
    DuplicateAnswer, EmptyQuestionPool, IneligiblePlayer, PersistenceFailure, StaleOrMismatchedRound,
)
from trivia.models import SESSION_RUNNING

EPOCH = datetime(1970, 1, 1)


def epoch_ms(moment: datetime) -> int:
    return int((moment - EPOCH).total_seconds() * 1000)


def close_key(session_id: int, round_id: int):
    return ('round-close', session_id, round_id)


def next_round_key(session_id: int):
    return ('next-round', session_id)


def recover_key(session_id: int):
    return ('recover', session_id)


class SessionLocks:
    """Re-entrant lock per session id; the map itself is only locked to create and retire entries.

    A lock stays in the map while any caller holds or waits on it, so
    ``discard`` during a held section retires the entry on the last release.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[int, threading.RLock] = {}
        self._users: Dict[int, int] = {}
        self._retired: Set[int] = set()

    @contextmanager
    def hold(self, session_id: int):
        with self._guard:
            lock = self._locks.setdefault(session_id, threading.RLock())
            self._users[session_id] = self._users.get(session_id, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._users[session_id] -= 1
                if not self._users[session_id]:
                    del self._users[session_id]
                    if session_id in self._retired:
                        self._retired.discard(session_id)
                        self._locks.pop(session_id, None)

    def discard(self, session_id: int) -> None:
        with self._guard:
            if self._users.get(session_id):
                self._retired.add(session_id)
            else:
                self._locks.pop(session_id, None)

    def __contains__(self, session_id: int) -> bool:
        with self._guard:
            return session_id in self._locks


class RoundScheduler:
    def __init__(self, app, store, notifier, questions, names, timers, locks, clock):
        self.app = app
        self.store = store
        self.notifier = notifier
        self.questions = questions
        self.names = names
        self.timers = timers
        self.locks = locks
        self.clock = clock
        # Wired by the lifecycle controller
        self.on_reverted: Optional[Callable[[int], None]] = None
        self.on_finished: Optional[Callable[[int], None]] = None

    @property
    def log(self):
        return self.app.logger

    def _cfg(self, key: str, default: int) -> int:
        return int(self.app.config.get(key, default))

    # ---- advancing ----

    def start(self, session_id: int) -> None:
        self.timers.schedule(next_round_key(session_id), self._cfg('FIRST_ROUND_DELAY_MS', 300),
                             self.next_round, session_id)

    def next_round(self, session_id: int) -> None:
        try:
            with self.locks.hold(session_id):
                self._open_next_round(session_id)
        except PersistenceFailure as exc:
            self._schedule_recovery(session_id, exc)

    def _open_next_round(self, session_id: int) -> None:
        session = self.store.get(session_id)
        if not session or session.status != SESSION_RUNNING:
            self.log.info(f"[round-open-skip] session={session_id} not running")
            return
        if self.store.open_round(session_id) is not None:
            self.log.info(f"[round-open-skip] session={session_id} a round is already open")
            return

        eligible = session.eligible_players()
        if len(eligible) <= 1:
            self._finish(session_id, eligible[0].identity_id if eligible else None)
            return

        try:
            question = self._select_question(session_id)
        except EmptyQuestionPool:
            self._handle_empty_pool(session_id)
            return

        budget = self._cfg('QUESTION_TIME_MS', 5000)
        rnd = self.store.append_round(session_id, question, budget, self.clock())
        if rnd is None:
            return
        self.log.info(
            f"[round-open] session={session_id} round={rnd.id} number={rnd.number} "
            f"question={rnd.question_id} eligible={len(eligible)} budget={budget}ms"
        )
        self._dispatch(session, rnd)
        self.timers.schedule(close_key(session_id, rnd.id), budget, self.close_round, session_id, rnd.id)

    def _select_question(self, session_id: int):
        if self.questions.count_available() <= 0:
            raise EmptyQuestionPool(f"no questions for session {session_id}")
        recent = self.store.recent_question_ids(session_id, self._cfg('RECENT_QUESTION_WINDOW', 5))
        question = self.questions.fetch_random(recent)
        if question is None and recent:
            self.log.info(f"[question-fallback] session={session_id} exclusion exhausted the pool")
            question = self.questions.fetch_random(())
        if question is None:
            raise EmptyQuestionPool(f"no questions for session {session_id}")
        return question

    def _handle_empty_pool(self, session_id: int) -> None:
        self.log.warning(f"[no-questions] session={session_id} question pool is empty")
        reverted = self.store.revert_to_waiting(session_id)
        self.notifier.broadcast(session_id, 'no_questions', {
            'sessionId': session_id,
            'message': 'No questions available. Back to the waiting room.',
        })
        if reverted:
            self.timers.cancel_session(session_id)
            if self.on_reverted:
                self.on_reverted(session_id)
        else:
            self.timers.schedule(recover_key(session_id), self._cfg('RECOVERY_DELAY_MS', 2000),
                                 self.resume, session_id)

    def _question_payload(self, session_id: int, rnd, remaining_ms: int) -> dict:
        question = rnd.question
        return {
            'sessionId': session_id,
            'roundId': rnd.id,
            'roundNumber': rnd.number,
            'questionId': rnd.question_id,
            'statement': question['statement'],
            'options': question['options'],
            'category': question['category'],
            'timeBudgetMs': rnd.time_budget_ms,
            'remainingMs': remaining_ms,
        }

    def _dispatch(self, session, rnd) -> None:
        payload = self._question_payload(session.id, rnd, rnd.time_budget_ms)
        for player in session.players:
            if player.eliminated:
                self.notifier.to_identity(player.identity_id, 'eliminated_notice',
                                          {'sessionId': session.id, 'roundId': rnd.id})
            else:
                self.notifier.to_identity(player.identity_id, 'question', payload)

    # ---- closing ----

    def close_round(self, session_id: int, round_id: int, reason: str = 'timeout'):
        """Close ``round_id`` if it is still open. Safe to call redundantly."""
        try:
            with self.locks.hold(session_id):
                outcome = self.store.close_round_if_open(session_id, round_id, self.clock())
                if outcome is None:
                    self.log.info(f"[round-close-skip] session={session_id} round={round_id} reason={reason} already closed")
                    return None
                self.timers.cancel(close_key(session_id, round_id))
                self.log.info(
                    f"[round-close] session={session_id} round={round_id} reason={reason} "
                    f"eliminated={len(outcome.eliminated)} remaining={outcome.eligible_count}"
                )
                summary = {
                    'sessionId': session_id,
                    'roundId': round_id,
                    'correctOptionIndex': outcome.correct_option_index,
                    'eliminatedIdentities': outcome.eliminated,
                    'eligibleCount': outcome.eligible_count,
                }
                if outcome.eligible_count == 1:
                    summary['winner'] = self._winner_payload(outcome.survivors[0])
                self.notifier.broadcast(session_id, 'round_summary', summary)

                if outcome.eligible_count <= 1:
                    self._finish(session_id, outcome.survivors[0] if outcome.survivors else None)
                else:
                    self.timers.schedule(next_round_key(session_id), self._cfg('BETWEEN_ROUNDS_DELAY_MS', 5000),
                                         self.next_round, session_id)
                return outcome
        except PersistenceFailure as exc:
            self._schedule_recovery(session_id, exc)
            return None

    def _winner_payload(self, identity_id: Optional[str]):
        if not identity_id:
            return None
        return {'id': identity_id, 'name': self.names.resolve_display_name(identity_id)}

    def _finish(self, session_id: int, winner_id: Optional[str]) -> bool:
        if not self.store.finalize(session_id, winner_id, self.clock()):
            self.log.info(f"[session-finish-skip] session={session_id} already finished")
            return False
        self.timers.cancel_session(session_id)
        self.log.info(f"[session-finish] session={session_id} winner={winner_id}")
        self.notifier.broadcast(session_id, 'session_finished', {
            'sessionId': session_id,
            'winner': self._winner_payload(winner_id),
        })
        if self.on_finished:
            self.on_finished(session_id)
        return True

    # ---- answers ----

    def submit_answer(self, identity_id: str, session_id: int, chosen_option: int,
                      question_id=None, round_id=None, client_timestamp=None):
        """Record a first answer for the open round; stale or repeated submissions are dropped."""
        try:
            with self.locks.hold(session_id):
                try:
                    record, rnd = self._accept_answer(identity_id, session_id, chosen_option,
                                                      question_id, round_id, client_timestamp)
                except (StaleOrMismatchedRound, DuplicateAnswer, IneligiblePlayer) as exc:
                    self.log.info(f"[answer-drop] session={session_id} identity={identity_id} {type(exc).__name__}: {exc}")
                    return None

                answered = {a.identity_id for a in rnd.answers}
                self.notifier.broadcast(session_id, 'answer_progress', {
                    'sessionId': session_id,
                    'roundId': rnd.id,
                    'answeredCount': len(answered),
                })
                session = self.store.get(session_id)
                eligible = {p.identity_id for p in session.eligible_players()}
                if eligible and eligible <= answered:
                    self.close_round(session_id, rnd.id, reason='all-answered')
                return record
        except PersistenceFailure as exc:
            self.log.error(f"[answer-error] session={session_id} identity={identity_id} {exc}")
            return None

    def _accept_answer(self, identity_id, session_id, chosen_option, question_id, round_id, client_timestamp):
        if round_id is None and question_id is None:
            raise StaleOrMismatchedRound("answer names neither a round nor a question")
        session = self.store.get(session_id)
        if not session or session.status != SESSION_RUNNING:
            raise StaleOrMismatchedRound(f"session {session_id} is not running")
        rnd = self.store.open_round(session_id)
        if rnd is None:
            raise StaleOrMismatchedRound(f"session {session_id} has no open round")
        if round_id is not None and rnd.id != round_id:
            raise StaleOrMismatchedRound(f"round {round_id} is not the open round {rnd.id}")
        if question_id is not None and str(question_id) != rnd.question_id:
            raise StaleOrMismatchedRound(f"question {question_id} is not the open question {rnd.question_id}")
        player = session.player_for(identity_id)
        if player is None or player.eliminated:
            raise IneligiblePlayer(f"{identity_id} is not an eligible player")
        if rnd.answer_for(identity_id) is not None:
            raise DuplicateAnswer(f"{identity_id} already answered round {rnd.id}")

        now = self.clock()
        latency_ms = max(0, int((now - rnd.started_at).total_seconds() * 1000))
        client_latency_ms = None
        if isinstance(client_timestamp, (int, float)) and not isinstance(client_timestamp, bool):
            client_latency_ms = epoch_ms(now) - int(client_timestamp)
        correct = chosen_option == rnd.correct_option_index
        record = self.store.record_answer(rnd.id, identity_id, chosen_option, correct,
                                          latency_ms, client_latency_ms)
        self.log.info(
            f"[answer] session={session_id} round={rnd.id} identity={identity_id} "
            f"correct={correct} latency={latency_ms}ms client_transit={client_latency_ms}ms"
        )
        return record, rnd

    # ---- reconnection & recovery ----

    def resync(self, identity_id: str, session_id: int) -> None:
        """Resend the identity's status and, if a round is open, the question with its remaining time."""
        session = self.store.get(session_id)
        if not session:
            return
        player = session.player_for(identity_id)
        if player is None:
            return
        self.notifier.to_identity(identity_id, 'player_status', {
            'sessionId': session_id,
            'eliminated': player.eliminated,
            'score': player.score,
        })
        rnd = self.store.open_round(session_id)
        if rnd is None:
            return
        if player.eliminated:
            self.notifier.to_identity(identity_id, 'eliminated_notice', {'sessionId': session_id, 'roundId': rnd.id})
            return
        payload = self._question_payload(session_id, rnd, rnd.remaining_ms(self.clock()))
        payload['answered'] = rnd.answer_for(identity_id) is not None
        self.notifier.to_identity(identity_id, 'question', payload)

    def resume(self, session_id: int) -> None:
        """Rebuild timers for a running session from its durable record."""
        with self.locks.hold(session_id):
            session = self.store.get(session_id)
            if not session or session.status != SESSION_RUNNING:
                return
            rnd = self.store.open_round(session_id)
            if rnd is not None:
                remaining = rnd.remaining_ms(self.clock())
                self.log.info(f"[resume] session={session_id} round={rnd.id} remaining={remaining}ms")
                self.timers.schedule(close_key(session_id, rnd.id), remaining, self.close_round, session_id, rnd.id)
            else:
                self.log.info(f"[resume] session={session_id} no open round, scheduling next round")
                self.timers.schedule(next_round_key(session_id), self._cfg('FIRST_ROUND_DELAY_MS', 300),
                                     self.next_round, session_id)

    def _schedule_recovery(self, session_id: int, exc: Exception) -> None:
        self.log.error(f"[persistence-failure] session={session_id} {exc}; resuming from durable state later")
        self.timers.schedule(recover_key(session_id), self._cfg('RECOVERY_DELAY_MS', 2000), self.resume, session_id)
