import pytest

from conftest import RecordingNotifier, player
from trivia.errors import CapacityExceeded
from trivia.services.membership import MembershipRegistry


@pytest.fixture()
def registry():
    return MembershipRegistry(RecordingNotifier(), min_players=2, max_players=3)


def test_join_is_idempotent_and_broadcasts_counts(registry):
    assert registry.join(player(1), 10, 'sid-1') == 1
    assert registry.join(player(2), 10, 'sid-2') == 2
    assert registry.join(player(1), 10, 'sid-1b') == 2
    updates = registry.notifier.named('lobby_update', target=10)
    assert [u['count'] for u in updates] == [1, 2]
    assert updates[-1] == {'sessionId': 10, 'count': 2, 'min': 2, 'max': 3}
    # re-join refreshes the connection handle and tells only the joiner
    assert [m.sid for m in registry.members(10)] == ['sid-1b', 'sid-2']
    assert registry.notifier.named('lobby_update', target='p1')[0]['count'] == 2


def test_capacity_exceeded_leaves_state_unchanged(registry):
    for n in (1, 2, 3):
        registry.join(player(n), 10)
    with pytest.raises(CapacityExceeded):
        registry.join(player(4), 10)
    assert registry.size(10) == 3
    assert not registry.contains('p4', 10)
    # an existing member may still re-join at capacity
    assert registry.join(player(3), 10) == 3


def test_leave_is_idempotent(registry):
    registry.join(player(1), 10)
    assert registry.leave('p1', 10) is True
    assert registry.leave('p1', 10) is False
    assert registry.size(10) == 0


def test_leave_everywhere_respects_newer_connection(registry):
    registry.join(player(1), 10, 'old')
    registry.join(player(1), 10, 'new')
    assert registry.leave_everywhere('p1', sid='old') == []
    assert registry.contains('p1', 10)
    assert registry.leave_everywhere('p1', sid='new') == [10]
    assert not registry.contains('p1', 10)


def test_reconcile_returns_present_members_not_yet_persisted(registry):
    for n in (1, 2, 3):
        registry.join(player(n), 10)
    fresh = registry.reconcile(10, ['p2', 'p2', 'ghost'])
    assert [m.identity.id for m in fresh] == ['p1', 'p3']


def test_members_are_sharded_by_session(registry):
    registry.join(player(1), 10)
    registry.join(player(2), 11)
    assert registry.size(10) == 1
    registry.drop(10)
    assert registry.size(10) == 0
    assert registry.size(11) == 1
