from flask import current_app, request
from flask_socketio import emit, join_room, leave_room
from trivia import socketio
from trivia.auth import Identity, bearer_token
from trivia.errors import AuthenticationFailure, CapacityExceeded, PersistenceFailure
from trivia.services import get_engine
from trivia.services.notifier import NAMESPACE, identity_room, session_room
from typing import Dict, Optional

# Verified identity per live connection
_sid_to_identity: Dict[str, Identity] = {}


def _get_sid() -> str:
    # request.sid exists in Socket.IO context
    return request.sid  # type: ignore


def _current_identity() -> Optional[Identity]:
    return _sid_to_identity.get(_get_sid())


def handle_connect(auth=None):
    token = auth.get('token') if isinstance(auth, dict) else None
    token = token or request.args.get('token') or bearer_token(request.headers.get('Authorization'))
    try:
        identity = get_engine().verifier(token)
    except AuthenticationFailure as exc:
        current_app.logger.info(f"[socket-auth] refused sid={_get_sid()}: {exc}")
        raise ConnectionRefusedError(str(exc))
    _sid_to_identity[_get_sid()] = identity
    join_room(identity_room(identity.id))
    emit('connected', {'message': f'Connected to {NAMESPACE}', 'identity': identity.to_dict()})


def handle_disconnect(reason=None):
    identity = _sid_to_identity.pop(_get_sid(), None)
    if not identity:
        return
    try:
        get_engine().lifecycle.handle_disconnect(identity.id, _get_sid())
    except PersistenceFailure as exc:
        current_app.logger.error(f"[disconnect] identity={identity.id} could not detach: {exc}")


def handle_join_lobby(data=None):
    identity = _current_identity()
    if not identity:
        emit('error', {'message': 'Not authenticated'})
        return
    try:
        session = get_engine().lifecycle.join_waiting_room(identity, _get_sid())
    except CapacityExceeded:
        return
    except PersistenceFailure as exc:
        current_app.logger.error(f"[lobby-join] identity={identity.id} failed: {exc}")
        emit('error', {'message': 'Waiting room unavailable, try again'})
        return
    emit('joined', {'room': session_room(session.id), 'sessionId': session.id, 'status': session.status})


def handle_leave_lobby(data=None):
    identity = _current_identity()
    if not identity:
        return
    for session_id in get_engine().lifecycle.leave_waiting_room(identity.id):
        leave_room(session_room(session_id))
        emit('left', {'room': session_room(session_id), 'sessionId': session_id})


def _int_field(data, key, required=True):
    value = data.get(key)
    if value is None and not required:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{key} must be an integer, got {value!r}")
    return value


def handle_submit_answer(data):
    identity = _current_identity()
    if not identity:
        return
    data = data if isinstance(data, dict) else {}
    try:
        session_id = _int_field(data, 'sessionId')
        chosen = _int_field(data, 'chosenOptionIndex')
        round_id = _int_field(data, 'roundId', required=False)
    except ValueError as exc:
        current_app.logger.info(f"[answer-drop] identity={identity.id} malformed payload: {exc}")
        return
    get_engine().scheduler.submit_answer(
        identity.id,
        session_id,
        chosen,
        question_id=data.get('questionId'),
        round_id=round_id,
        client_timestamp=data.get('clientTimestamp'),
    )


def handle_ping(data):
    emit('pong', data or {})


def register_socketio_handlers() -> None:
    """Register Socket.IO event handlers on namespace '/ws'."""
    socketio.on_event('connect', handle_connect, namespace=NAMESPACE)
    socketio.on_event('disconnect', handle_disconnect, namespace=NAMESPACE)
    socketio.on_event('join_lobby', handle_join_lobby, namespace=NAMESPACE)
    socketio.on_event('leave_lobby', handle_leave_lobby, namespace=NAMESPACE)
    socketio.on_event('submit_answer', handle_submit_answer, namespace=NAMESPACE)
    socketio.on_event('ping', handle_ping, namespace=NAMESPACE)
