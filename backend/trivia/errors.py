"""Domain errors raised by the game engine.

Socket handlers catch these at the transport boundary; the expected races
(stale round, duplicate answer, ineligible player) are dropped silently.
"""


class TriviaError(Exception):
    """Base class for engine errors."""


class AuthenticationFailure(TriviaError):
    """Missing or invalid credential."""


class CapacityExceeded(TriviaError):
    def __init__(self, session_id, max_players):
        super().__init__(f"session {session_id} is full ({max_players})")
        self.session_id = session_id
        self.max_players = max_players


class StaleOrMismatchedRound(TriviaError):
    """Answer targets a round that is no longer the open one."""


class DuplicateAnswer(TriviaError):
    """A second answer from the same identity for the same round."""


class IneligiblePlayer(TriviaError):
    """Identity is not an eligible (non-eliminated) player of the session."""


class EmptyQuestionPool(TriviaError):
    """No question is available when a round must start."""


class PersistenceFailure(TriviaError):
    """A store write failed after all retries."""
