"""Notification channel over Socket.IO rooms.

Every authenticated connection joins ``identity:<id>``; lobby and session
members join ``session:<id>``. Emits need no acknowledgement.
"""

from typing import Any, Dict, Optional

from flask_socketio import SocketIO

NAMESPACE = '/ws'


def session_room(session_id: int) -> str:
    return f"session:{session_id}"


def identity_room(identity_id: str) -> str:
    return f"identity:{identity_id}"


class Notifier:
    def __init__(self, socketio: SocketIO, namespace: str = NAMESPACE):
        self.socketio = socketio
        self.namespace = namespace

    def broadcast(self, session_id: int, event: str, payload: Optional[Dict[str, Any]] = None) -> None:
        self._emit(event, payload or {}, session_room(session_id))

    def to_identity(self, identity_id: str, event: str, payload: Optional[Dict[str, Any]] = None) -> None:
        self._emit(event, payload or {}, identity_room(identity_id))

    def subscribe(self, sid: str, session_id: int) -> None:
        self.socketio.server.enter_room(sid, session_room(session_id), namespace=self.namespace)

    def unsubscribe(self, sid: str, session_id: int) -> None:
        self.socketio.server.leave_room(sid, session_room(session_id), namespace=self.namespace)

    def _emit(self, event: str, payload: Dict[str, Any], room: str) -> None:
        self.socketio.emit(event, payload, to=room, namespace=self.namespace)
