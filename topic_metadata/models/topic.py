"""Topic data model for the read-only curriculum catalog."""

import json
from dataclasses import dataclass, field
from typing import Optional

from ..exceptions import ValidationError


@dataclass(frozen=True)
class Topic:
    """A curriculum topic as exposed by the topics-with-context view."""

    topic_id: str
    topic_name: str
    subject_name: str
    exam_board: str
    qualification_level: str
    topic_code: Optional[str] = None
    topic_level: int = 1
    full_path: tuple[str, ...] = ()

    @classmethod
    def from_row(cls, row: dict) -> 'Topic':
        """Build a Topic from a store row.

        ``full_path`` may arrive as a list, a JSON-encoded list, or be missing,
        in which case the topic's own name is the whole path.

        Raises:
            ValidationError: If topic_id or topic_name is missing
        """
        for required in ('topic_id', 'topic_name'):
            if not row.get(required):
                raise ValidationError(f"Topic row missing '{required}'", field=required,
                                      value=row.get('topic_id'))

        path = row.get('full_path')
        if isinstance(path, str):
            try:
                path = json.loads(path)
            except ValueError:
                path = [path]
        if not path:
            path = [row['topic_name']]

        return cls(
            topic_id=str(row['topic_id']),
            topic_name=row['topic_name'],
            subject_name=row.get('subject_name') or '',
            exam_board=row.get('exam_board') or '',
            qualification_level=row.get('qualification_level') or '',
            topic_code=row.get('topic_code'),
            topic_level=int(row.get('topic_level') or 1),
            full_path=tuple(path),
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            'topic_id': self.topic_id,
            'topic_name': self.topic_name,
            'topic_code': self.topic_code,
            'topic_level': self.topic_level,
            'subject_name': self.subject_name,
            'exam_board': self.exam_board,
            'qualification_level': self.qualification_level,
            'full_path': list(self.full_path),
        }


@dataclass(frozen=True)
class TopicFilters:
    """Optional equality filters restricting a run to part of the catalog."""
    exam_board: Optional[str] = None
    subject: Optional[str] = None

    def as_columns(self) -> dict[str, str]:
        """Column -> value pairs for the filters that are set."""
        columns = {}
        if self.exam_board:
            columns['exam_board'] = self.exam_board
        if self.subject:
            columns['subject_name'] = self.subject
        return columns

    def describe(self) -> str:
        parts = [f"{k}={v}" for k, v in self.as_columns().items()]
        return ", ".join(parts) if parts else "all topics"


@dataclass
class PendingWork:
    """Snapshot of the catalog against existing metadata at run start."""
    topics: list[Topic] = field(default_factory=list)
    total_topics: int = 0
    with_metadata: int = 0

    @property
    def pending_count(self) -> int:
        return len(self.topics)
