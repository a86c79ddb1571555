"""Durable session record.

Transitions that decide round closing, elimination or session status are
conditional UPDATEs on the expected prior state, so a redundant caller
observes ``rowcount == 0`` and backs off. Writes are retried on transient
database errors and surface as PersistenceFailure once retries run out.
"""

from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional
import json
import time

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from trivia import db
from trivia.errors import DuplicateAnswer, PersistenceFailure, StaleOrMismatchedRound
from trivia.models import (
    AnswerRecord, GameSession, Round, SessionPlayer,
    SESSION_FINISHED, SESSION_RUNNING, SESSION_WAITING,
)


@dataclass
class RoundOutcome:
    session_id: int
    round_id: int
    correct_option_index: int
    eliminated: List[str] = field(default_factory=list)
    survivors: List[str] = field(default_factory=list)

    @property
    def eligible_count(self) -> int:
        return len(self.survivors)


class SessionStore:
    def __init__(self, app):
        self.app = app

    # ---- write helper ----

    def _write(self, label: str, fn: Callable):
        cfg = self.app.config
        retries = max(1, int(cfg.get('PERSIST_RETRIES', 3)))
        delay = max(0, int(cfg.get('PERSIST_RETRY_DELAY_MS', 50))) / 1000.0
        for attempt in range(1, retries + 1):
            try:
                result = fn()
                db.session.commit()
                return result
            except IntegrityError:
                db.session.rollback()
                raise
            except SQLAlchemyError as exc:
                db.session.rollback()
                self.app.logger.warning(f"[store-retry] op={label} attempt={attempt}/{retries} error={exc}")
                if attempt == retries:
                    raise PersistenceFailure(f"{label} failed after {retries} attempts") from exc
                time.sleep(delay)

    # ---- sessions ----

    def get(self, session_id: int) -> Optional[GameSession]:
        return db.session.get(GameSession, session_id)

    def create(self, min_players: int, max_players: int) -> GameSession:
        def op():
            session = GameSession(status=SESSION_WAITING, min_players=min_players, max_players=max_players)
            db.session.add(session)
            db.session.flush()
            return session
        return self._write('create', op)

    def current_status(self, session_id: int) -> Optional[str]:
        """Status read from the database rather than the identity map."""
        return db.session.execute(
            select(GameSession.status).where(GameSession.id == session_id)
        ).scalar()

    def find_open_waiting(self) -> Optional[GameSession]:
        return GameSession.query.filter_by(status=SESSION_WAITING).order_by(GameSession.id).first()

    def open_waiting_session(self, min_players: int, max_players: int) -> GameSession:
        """Find the open waiting session or create it; a creation race resolves to the winner's row."""
        for _ in range(3):
            session = self.find_open_waiting()
            if session:
                return session
            try:
                session = self.create(min_players, max_players)
                self.app.logger.info(f"[session-create] session={session.id} code={session.join_code}")
                return session
            except IntegrityError:
                self.app.logger.info("[session-create] lost creation race, re-fetching open session")
        session = self.find_open_waiting()
        if session is None:
            raise PersistenceFailure('could not create or find an open waiting session')
        return session

    def find_running_for_identity(self, identity_id: str) -> Optional[GameSession]:
        return (
            GameSession.query.join(SessionPlayer)
            .filter(GameSession.status == SESSION_RUNNING, SessionPlayer.identity_id == identity_id)
            .order_by(GameSession.id.desc())
            .first()
        )

    def running_session_ids(self) -> List[int]:
        return [s.id for s in GameSession.query.filter_by(status=SESSION_RUNNING).order_by(GameSession.id)]

    def start_session(self, session_id: int, new_members: Iterable, handles: Dict[str, Optional[str]], now) -> bool:
        """waiting -> running exactly once; adds ``new_members`` and refreshes connection handles."""
        new_members = list(new_members)

        def op():
            res = db.session.execute(
                update(GameSession)
                .where(GameSession.id == session_id, GameSession.status == SESSION_WAITING)
                .values(status=SESSION_RUNNING, started_at=now)
            )
            if res.rowcount != 1:
                return False
            for player in SessionPlayer.query.filter_by(session_id=session_id):
                if player.identity_id in handles:
                    player.connection_sid = handles[player.identity_id]
            for member in new_members:
                db.session.add(SessionPlayer(
                    session_id=session_id,
                    identity_id=member.identity.id,
                    display_name=member.identity.name,
                    connection_sid=member.sid,
                    eliminated=False,
                    score=0,
                ))
            return True
        return self._write('start_session', op)

    def revert_to_waiting(self, session_id: int) -> bool:
        """running -> waiting while no round is open; False if another session holds the waiting slot."""
        def op():
            if self.open_round(session_id) is not None:
                return False
            res = db.session.execute(
                update(GameSession)
                .where(GameSession.id == session_id, GameSession.status == SESSION_RUNNING)
                .values(status=SESSION_WAITING)
            )
            return res.rowcount == 1
        try:
            return self._write('revert_to_waiting', op)
        except IntegrityError:
            return False

    def finalize(self, session_id: int, winner_identity_id: Optional[str], now) -> bool:
        def op():
            res = db.session.execute(
                update(GameSession)
                .where(GameSession.id == session_id, GameSession.status == SESSION_RUNNING)
                .values(status=SESSION_FINISHED, winner_identity_id=winner_identity_id, ended_at=now)
            )
            if res.rowcount == 1:
                db.session.execute(
                    update(SessionPlayer)
                    .where(SessionPlayer.session_id == session_id)
                    .values(connection_sid=None)
                )
            return res.rowcount == 1
        return self._write('finalize', op)

    # ---- connections ----

    def attach_connection(self, session_id: int, identity_id: str, sid: str) -> bool:
        def op():
            res = db.session.execute(
                update(SessionPlayer)
                .where(SessionPlayer.session_id == session_id, SessionPlayer.identity_id == identity_id)
                .values(connection_sid=sid)
            )
            return res.rowcount == 1
        return self._write('attach_connection', op)

    def detach_connection(self, identity_id: str, sid: str) -> int:
        """Clear ``sid`` from running sessions; a newer handle is left alone."""
        running_ids = select(GameSession.id).where(GameSession.status == SESSION_RUNNING)

        def op():
            res = db.session.execute(
                update(SessionPlayer)
                .where(
                    SessionPlayer.identity_id == identity_id,
                    SessionPlayer.connection_sid == sid,
                    SessionPlayer.session_id.in_(running_ids),
                )
                .values(connection_sid=None)
                .execution_options(synchronize_session=False)
            )
            return res.rowcount
        return self._write('detach_connection', op)

    # ---- rounds ----

    def open_round(self, session_id: int) -> Optional[Round]:
        return Round.query.filter(Round.session_id == session_id, Round.ended_at.is_(None)).first()

    def recent_question_ids(self, session_id: int, limit: int) -> List[str]:
        if limit <= 0:
            return []
        rows = (
            Round.query.filter_by(session_id=session_id)
            .order_by(Round.number.desc())
            .limit(limit)
            .all()
        )
        return [r.question_id for r in rows]

    def append_round(self, session_id: int, question, time_budget_ms: int, now) -> Optional[Round]:
        """Persist a new open round; None when one is already open or the session is not running."""
        def op():
            session = db.session.get(GameSession, session_id)
            if not session or session.status != SESSION_RUNNING:
                return None
            if self.open_round(session_id) is not None:
                return None
            last = Round.query.filter_by(session_id=session_id).order_by(Round.number.desc()).first()
            rnd = Round(
                session_id=session_id,
                number=(last.number + 1) if last else 1,
                question_id=str(question.id),
                question_payload=json.dumps({
                    'statement': question.statement,
                    'options': list(question.options),
                    'category': question.category,
                }),
                correct_option_index=question.correct_index,
                time_budget_ms=time_budget_ms,
                started_at=now,
            )
            db.session.add(rnd)
            db.session.flush()
            return rnd
        try:
            return self._write('append_round', op)
        except IntegrityError:
            self.app.logger.info(f"[round-open-skip] session={session_id} concurrent round already open")
            return None

    def record_answer(self, round_id: int, identity_id: str, option_index: int, correct: bool,
                      latency_ms: int, client_latency_ms: Optional[int] = None) -> AnswerRecord:
        def op():
            rnd = db.session.get(Round, round_id)
            if rnd is None or rnd.ended_at is not None:
                raise StaleOrMismatchedRound(f"round {round_id} is not open")
            record = AnswerRecord(
                round_id=round_id,
                identity_id=identity_id,
                option_index=option_index,
                correct=correct,
                latency_ms=latency_ms,
                client_latency_ms=client_latency_ms,
            )
            db.session.add(record)
            player = SessionPlayer.query.filter_by(session_id=rnd.session_id, identity_id=identity_id).first()
            if player is not None:
                player.last_answer = json.dumps({
                    'round_id': round_id,
                    'option_index': option_index,
                    'correct': correct,
                    'latency_ms': latency_ms,
                })
            db.session.flush()
            return record
        try:
            return self._write('record_answer', op)
        except IntegrityError:
            raise DuplicateAnswer(f"{identity_id} already answered round {round_id}")

    def mark_eliminated(self, session_id: int, identity_ids: Iterable[str], commit: bool = True) -> List[str]:
        """Flip eliminated false -> true; returns the identities that actually changed."""
        identity_ids = list(identity_ids)

        def op():
            if not identity_ids:
                return []
            changed = [
                p.identity_id for p in SessionPlayer.query.filter(
                    SessionPlayer.session_id == session_id,
                    SessionPlayer.identity_id.in_(identity_ids),
                    SessionPlayer.eliminated.is_(False),
                ).order_by(SessionPlayer.id)
            ]
            if changed:
                db.session.execute(
                    update(SessionPlayer)
                    .where(
                        SessionPlayer.session_id == session_id,
                        SessionPlayer.identity_id.in_(changed),
                        SessionPlayer.eliminated.is_(False),
                    )
                    .values(eliminated=True)
                )
            return changed
        if not commit:
            return op()
        return self._write('mark_eliminated', op)

    def close_round_if_open(self, session_id: int, round_id: int, now) -> Optional[RoundOutcome]:
        """Close the round exactly once and apply its eliminations and scores in the same transaction.

        Wrong-or-absent eliminates, correct survives and scores a point.
        Returns None when the round was already closed.
        """
        def op():
            res = db.session.execute(
                update(Round)
                .where(Round.id == round_id, Round.session_id == session_id, Round.ended_at.is_(None))
                .values(ended_at=now)
            )
            if res.rowcount != 1:
                return None
            rnd = db.session.get(Round, round_id)
            answers = {a.identity_id: a for a in AnswerRecord.query.filter_by(round_id=round_id)}
            eligible = (
                SessionPlayer.query
                .filter(SessionPlayer.session_id == session_id, SessionPlayer.eliminated.is_(False))
                .order_by(SessionPlayer.id)
                .all()
            )
            correct_ids = [p.identity_id for p in eligible
                           if p.identity_id in answers and answers[p.identity_id].correct]
            losing_ids = [p.identity_id for p in eligible if p.identity_id not in correct_ids]
            eliminated = self.mark_eliminated(session_id, losing_ids, commit=False)
            if correct_ids:
                db.session.execute(
                    update(SessionPlayer)
                    .where(SessionPlayer.session_id == session_id, SessionPlayer.identity_id.in_(correct_ids))
                    .values(score=SessionPlayer.score + 1)
                )
            return RoundOutcome(
                session_id=session_id,
                round_id=round_id,
                correct_option_index=rnd.correct_option_index,
                eliminated=eliminated,
                survivors=correct_ids,
            )
        return self._write('close_round', op)
