"""Default question bank and display-name collaborators.

The engine only needs ``count_available()``, ``fetch_random(exclude_ids)``
and ``resolve_display_name(identity_id)``; any object providing them can be
passed to ``create_app``.
"""

from dataclasses import dataclass
import random
from typing import Iterable, List, Optional, Sequence

from trivia import db
from trivia.models import Question, SessionPlayer


@dataclass(frozen=True)
class QuestionView:
    id: str
    statement: str
    options: Sequence[str]
    category: str
    correct_index: int


class SqlQuestionBank:
    """Questions stored in the ``question`` table."""

    def count_available(self) -> int:
        return Question.query.count()

    def fetch_random(self, exclude_ids: Iterable[str] = ()) -> Optional[QuestionView]:
        excluded = [int(q) for q in exclude_ids if str(q).isdigit()]
        query = Question.query
        if excluded:
            query = query.filter(~Question.id.in_(excluded))
        row = query.order_by(db.func.random()).first()
        if row is None:
            return None
        return QuestionView(
            id=str(row.id),
            statement=row.statement,
            options=row.option_list(),
            category=row.category,
            correct_index=row.correct_index,
        )


class InMemoryQuestionBank:
    """Fixed list of questions; handy for fixtures and local play."""

    def __init__(self, questions: Optional[List[QuestionView]] = None, rng: Optional[random.Random] = None):
        self.questions = list(questions or [])
        self.rng = rng or random.Random()

    def count_available(self) -> int:
        return len(self.questions)

    def fetch_random(self, exclude_ids: Iterable[str] = ()) -> Optional[QuestionView]:
        excluded = set(exclude_ids)
        pool = [q for q in self.questions if q.id not in excluded]
        return self.rng.choice(pool) if pool else None


class StoredNames:
    """Resolves a display name from the most recent session the identity played."""

    def resolve_display_name(self, identity_id: str) -> str:
        player = (
            SessionPlayer.query.filter_by(identity_id=identity_id)
            .order_by(SessionPlayer.id.desc())
            .first()
        )
        return player.display_name if player else identity_id
