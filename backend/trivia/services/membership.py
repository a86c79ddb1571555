"""Live presence per waiting session.

The registry is the volatile truth of who is connected and waiting; the
persisted player list only catches up when a session starts.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional
import threading

from trivia.auth import Identity
from trivia.errors import CapacityExceeded


@dataclass
class Member:
    identity: Identity
    sid: Optional[str]


class MembershipRegistry:
    def __init__(self, notifier, min_players: int, max_players: int):
        self.notifier = notifier
        self.min_players = min_players
        self.max_players = max_players
        # session id -> identity id -> Member, in join order
        self._by_session: Dict[int, Dict[str, Member]] = {}
        self._lock = threading.Lock()

    def join(self, identity: Identity, session_id: int, sid: Optional[str] = None) -> int:
        """Add ``identity``; a repeated join only refreshes its connection handle."""
        with self._lock:
            members = self._by_session.setdefault(session_id, {})
            existing = members.get(identity.id)
            if existing is not None:
                existing.sid = sid or existing.sid
                count = len(members)
                changed = False
            else:
                if len(members) >= self.max_players:
                    raise CapacityExceeded(session_id, self.max_players)
                members[identity.id] = Member(identity=identity, sid=sid)
                count = len(members)
                changed = True
        if changed:
            self.broadcast_count(session_id, count)
        else:
            self.notifier.to_identity(identity.id, 'lobby_update', self.payload(session_id, count))
        return count

    def leave(self, identity_id: str, session_id: int) -> bool:
        with self._lock:
            members = self._by_session.get(session_id)
            if not members or identity_id not in members:
                return False
            del members[identity_id]
            count = len(members)
        self.broadcast_count(session_id, count)
        return True

    def leave_everywhere(self, identity_id: str, sid: Optional[str] = None) -> List[int]:
        """Remove ``identity_id`` from every session; with ``sid`` only where that handle is current."""
        with self._lock:
            left = []
            for session_id, members in self._by_session.items():
                member = members.get(identity_id)
                if member is None or (sid is not None and member.sid not in (None, sid)):
                    continue
                del members[identity_id]
                left.append((session_id, len(members)))
        for session_id, count in left:
            self.broadcast_count(session_id, count)
        return [session_id for session_id, _ in left]

    def size(self, session_id: int) -> int:
        with self._lock:
            return len(self._by_session.get(session_id, {}))

    def members(self, session_id: int) -> List[Member]:
        with self._lock:
            return [Member(identity=m.identity, sid=m.sid) for m in self._by_session.get(session_id, {}).values()]

    def contains(self, identity_id: str, session_id: int) -> bool:
        with self._lock:
            return identity_id in self._by_session.get(session_id, {})

    def reconcile(self, session_id: int, persisted_identity_ids: Iterable[str]) -> List[Member]:
        """Present members not yet in ``persisted_identity_ids``, each once, in join order."""
        seen = set(persisted_identity_ids)
        fresh = []
        for member in self.members(session_id):
            if member.identity.id in seen:
                continue
            seen.add(member.identity.id)
            fresh.append(member)
        return fresh

    def drop(self, session_id: int) -> None:
        with self._lock:
            self._by_session.pop(session_id, None)

    def payload(self, session_id: int, count: Optional[int] = None) -> dict:
        return {
            'sessionId': session_id,
            'count': self.size(session_id) if count is None else count,
            'min': self.min_players,
            'max': self.max_players,
        }

    def broadcast_count(self, session_id: int, count: Optional[int] = None) -> None:
        self.notifier.broadcast(session_id, 'lobby_update', self.payload(session_id, count))
