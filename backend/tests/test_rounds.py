import threading

from conftest import player
from trivia import db
from trivia.errors import PersistenceFailure
from trivia.models import AnswerRecord, GameSession, Round, SessionPlayer
from trivia.services.rounds import SessionLocks


def open_round(engine, session_id):
    return engine.store.open_round(session_id)


def answer(engine, identity_id, session_id, rnd, option):
    return engine.scheduler.submit_answer(identity_id, session_id, option,
                                          question_id=rnd.question_id, round_id=rnd.id)


def test_question_goes_only_to_eligible_players(engine, start_session, notifier):
    session_id = start_session(player(1), player(2))
    rnd = open_round(engine, session_id)
    assert rnd.number == 1
    for pid in ('p1', 'p2'):
        (payload,) = notifier.named('question', target=pid)
        assert payload['roundId'] == rnd.id
        assert payload['questionId'] == rnd.question_id
        assert payload['timeBudgetMs'] == 5000
        assert set(payload) >= {'statement', 'options', 'category'}
        assert 'correctOptionIndex' not in payload


def test_all_correct_answers_close_round_immediately(engine, start_session, timers, clock, notifier):
    # Scenario B
    session_id = start_session(player(1), player(2))
    rnd = open_round(engine, session_id)
    correct = rnd.correct_option_index
    clock.advance(400)
    answer(engine, 'p1', session_id, rnd, correct)
    clock.advance(400)
    answer(engine, 'p2', session_id, rnd, correct)

    assert open_round(engine, session_id) is None
    (summary,) = notifier.named('round_summary')
    assert summary['eliminatedIdentities'] == []
    assert summary['eligibleCount'] == 2
    assert summary['correctOptionIndex'] == correct
    assert 'winner' not in summary
    assert [p['answeredCount'] for p in notifier.named('answer_progress')] == [1, 2]
    # the close timer is moot and the next round is queued
    assert not timers.is_pending(('round-close', session_id, rnd.id))
    assert timers.delay_of(('next-round', session_id)) == 5000
    scores = {p.identity_id: p.score for p in SessionPlayer.query.filter_by(session_id=session_id)}
    assert scores == {'p1': 1, 'p2': 1}


def test_silent_player_is_eliminated_at_timeout(engine, start_session, timers, clock, notifier):
    # Scenario C
    session_id = start_session(player(1), player(2))
    rnd = open_round(engine, session_id)
    answer(engine, 'p1', session_id, rnd, rnd.correct_option_index)
    assert open_round(engine, session_id) is not None

    clock.advance(5000)
    timers.fire(('round-close', session_id, rnd.id))

    (summary,) = notifier.named('round_summary')
    assert summary['eliminatedIdentities'] == ['p2']
    assert summary['eligibleCount'] == 1
    assert summary['winner'] == {'id': 'p1', 'name': 'Player 1'}
    (finished,) = notifier.named('session_finished')
    assert finished['winner']['id'] == 'p1'
    session = db.session.get(GameSession, session_id)
    assert session.status == 'finished'
    assert session.winner_identity_id == 'p1'


def test_timer_and_last_answer_race_close_once(engine, start_session, notifier):
    session_id = start_session(player(1), player(2), player(3))
    rnd = open_round(engine, session_id)
    answer(engine, 'p1', session_id, rnd, rnd.correct_option_index)
    answer(engine, 'p2', session_id, rnd, rnd.correct_option_index)

    first = engine.scheduler.close_round(session_id, rnd.id, reason='timeout')
    # last answer arrives on its own schedule after the timer closed the round
    late = answer(engine, 'p3', session_id, rnd, rnd.correct_option_index)
    second = engine.scheduler.close_round(session_id, rnd.id, reason='all-answered')

    assert first is not None and second is None
    assert late is None
    assert len(notifier.named('round_summary')) == 1
    assert db.session.get(Round, rnd.id).ended_at is not None
    eliminated = [p.identity_id for p in SessionPlayer.query.filter_by(session_id=session_id, eliminated=True)]
    assert eliminated == ['p3']


def test_second_answer_is_ignored(engine, start_session, notifier):
    session_id = start_session(player(1), player(2))
    rnd = open_round(engine, session_id)
    wrong = (rnd.correct_option_index + 1) % len(rnd.question['options'])
    assert answer(engine, 'p1', session_id, rnd, wrong) is not None
    assert answer(engine, 'p1', session_id, rnd, rnd.correct_option_index) is None
    records = AnswerRecord.query.filter_by(round_id=rnd.id, identity_id='p1').all()
    assert len(records) == 1 and records[0].correct is False
    assert len(notifier.named('answer_progress')) == 1


def test_stale_round_and_outsiders_are_dropped(engine, start_session):
    session_id = start_session(player(1), player(2))
    rnd = open_round(engine, session_id)
    assert engine.scheduler.submit_answer('p1', session_id, 0, round_id=rnd.id + 99) is None
    assert engine.scheduler.submit_answer('p1', session_id, 0, question_id='not-this-one') is None
    assert engine.scheduler.submit_answer('stranger', session_id, 0, round_id=rnd.id) is None
    assert engine.scheduler.submit_answer('p1', session_id + 1, 0) is None
    assert AnswerRecord.query.count() == 0


def test_eliminated_player_gets_notice_and_cannot_answer(engine, start_session, timers, clock, notifier):
    session_id = start_session(player(1), player(2), player(3))
    rnd = open_round(engine, session_id)
    answer(engine, 'p1', session_id, rnd, rnd.correct_option_index)
    answer(engine, 'p2', session_id, rnd, rnd.correct_option_index)
    timers.fire(('round-close', session_id, rnd.id))

    notifier.clear()
    timers.fire(('next-round', session_id))
    second = open_round(engine, session_id)
    assert second.number == 2
    assert notifier.named('question', target='p3') == []
    assert notifier.named('eliminated_notice', target='p3') == [{'sessionId': session_id, 'roundId': second.id}]
    assert answer(engine, 'p3', session_id, second, second.correct_option_index) is None


def test_all_wrong_round_finishes_without_winner(engine, start_session, notifier):
    session_id = start_session(player(1), player(2))
    rnd = open_round(engine, session_id)
    wrong = (rnd.correct_option_index + 1) % len(rnd.question['options'])
    answer(engine, 'p1', session_id, rnd, wrong)
    answer(engine, 'p2', session_id, rnd, wrong)

    (summary,) = notifier.named('round_summary')
    assert sorted(summary['eliminatedIdentities']) == ['p1', 'p2']
    assert summary['eligibleCount'] == 0
    assert notifier.named('session_finished') == [{'sessionId': session_id, 'winner': None}]
    assert db.session.get(GameSession, session_id).winner_identity_id is None


def test_recent_questions_are_not_repeated(engine, start_session, timers, questions):
    session_id = start_session(player(1), player(2))
    seen = []
    for _ in range(3):
        rnd = open_round(engine, session_id)
        seen.append(rnd.question_id)
        answer(engine, 'p1', session_id, rnd, rnd.correct_option_index)
        answer(engine, 'p2', session_id, rnd, rnd.correct_option_index)
        timers.fire(('next-round', session_id))
    # a window of two over a pool of three forces all three questions
    assert sorted(seen) == ['q1', 'q2', 'q3']


def test_exhausted_exclusion_falls_back_to_any_question(engine, start_session, timers, questions):
    questions.questions = questions.questions[:1]
    session_id = start_session(player(1), player(2))
    rnd = open_round(engine, session_id)
    answer(engine, 'p1', session_id, rnd, rnd.correct_option_index)
    answer(engine, 'p2', session_id, rnd, rnd.correct_option_index)
    timers.fire(('next-round', session_id))
    again = open_round(engine, session_id)
    assert again.number == 2
    assert again.question_id == rnd.question_id


def test_empty_pool_mid_session_reverts_to_waiting(engine, start_session, timers, questions, notifier):
    session_id = start_session(player(1), player(2))
    rnd = open_round(engine, session_id)
    answer(engine, 'p1', session_id, rnd, rnd.correct_option_index)
    answer(engine, 'p2', session_id, rnd, rnd.correct_option_index)

    questions.questions = []
    timers.fire(('next-round', session_id))

    session = db.session.get(GameSession, session_id)
    assert session.status == 'waiting'
    assert Round.query.filter_by(session_id=session_id).count() == 1
    assert notifier.named('no_questions', target=session_id)
    assert all(not p.eliminated for p in session.players)


def test_persistence_failure_schedules_recovery(engine, start_session, timers, monkeypatch):
    session_id = start_session(player(1), player(2))
    rnd = open_round(engine, session_id)

    def broken_close(*args, **kwargs):
        raise PersistenceFailure('close_round failed after 2 attempts')

    monkeypatch.setattr(engine.store, 'close_round_if_open', broken_close)
    assert engine.scheduler.close_round(session_id, rnd.id) is None
    assert timers.is_pending(('recover', session_id))

    monkeypatch.undo()
    timers.fire(('recover', session_id))
    # recovery rebuilds the close timer from the durable record
    assert timers.is_pending(('round-close', session_id, rnd.id))


def test_answer_latency_is_recorded(engine, start_session, clock):
    session_id = start_session(player(1), player(2))
    rnd = open_round(engine, session_id)
    clock.advance(1200)
    record = answer(engine, 'p1', session_id, rnd, rnd.correct_option_index)
    assert record.latency_ms == 1200
    snapshot = SessionPlayer.query.filter_by(session_id=session_id, identity_id='p1').one().to_dict()['last_answer']
    assert snapshot['round_id'] == rnd.id and snapshot['correct'] is True


def test_answer_must_name_its_round_or_question(engine, start_session, timers):
    session_id = start_session(player(1), player(2))
    rnd = open_round(engine, session_id)
    assert engine.scheduler.submit_answer('p1', session_id, rnd.correct_option_index) is None
    assert AnswerRecord.query.count() == 0

    answer(engine, 'p1', session_id, rnd, rnd.correct_option_index)
    answer(engine, 'p2', session_id, rnd, rnd.correct_option_index)
    timers.fire(('next-round', session_id))
    second = open_round(engine, session_id)
    # a late answer for the first round never counts against the second
    assert engine.scheduler.submit_answer('p1', session_id, second.correct_option_index, round_id=rnd.id) is None
    assert AnswerRecord.query.filter_by(round_id=second.id).count() == 0


def test_discarded_session_lock_serializes_until_released():
    locks = SessionLocks()
    entered = threading.Event()

    def contender():
        with locks.hold(1):
            entered.set()

    with locks.hold(1):
        locks.discard(1)
        assert 1 in locks
        worker = threading.Thread(target=contender)
        worker.start()
        assert not entered.wait(0.1)
    worker.join(2)
    assert entered.is_set()
    assert 1 not in locks


def test_finished_session_retires_its_lock(engine, start_session, clock):
    session_id = start_session(player(1), player(2))
    rnd = open_round(engine, session_id)
    answer(engine, 'p1', session_id, rnd, rnd.correct_option_index)
    clock.advance(5000)
    engine.scheduler.close_round(session_id, rnd.id)
    assert db.session.get(GameSession, session_id).status == 'finished'
    assert session_id not in engine.locks
