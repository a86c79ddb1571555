from flask import Blueprint, jsonify
from flask_login import current_user, login_required
from trivia import db
from trivia.models import GameSession
from trivia.services import get_engine

sessions = Blueprint('sessions', __name__)


@sessions.route('/current', methods=['GET'])
@login_required
def get_current_session():
    """
    Returns the running session of the caller, or the waiting room they sit in.
    """
    engine = get_engine()
    running = engine.store.find_running_for_identity(current_user.id)
    if running:
        return jsonify(_with_open_round(running, engine))

    waiting = engine.store.find_open_waiting()
    if waiting and engine.registry.contains(current_user.id, waiting.id):
        payload = waiting.to_dict(include_rounds=False)
        payload['lobby'] = engine.registry.payload(waiting.id)
        payload['countdown_pending'] = engine.lifecycle.countdown_pending(waiting.id)
        return jsonify(payload)

    return jsonify({'error': 'You are not in a session'}), 404


@sessions.route('/<int:session_id>', methods=['GET'])
@login_required
def get_session(session_id):
    """
    Returns the persisted state of a session, including its round history.
    """
    session = db.get_or_404(GameSession, session_id)
    return jsonify(_with_open_round(session, get_engine()))


def _with_open_round(session, engine):
    payload = session.to_dict()
    rnd = session.open_round()
    payload['open_round'] = {
        'id': rnd.id,
        'number': rnd.number,
        'question_id': rnd.question_id,
        'remaining_ms': rnd.remaining_ms(engine.clock()),
    } if rnd else None
    return payload
