"""Defines classes for representing notes, categories, tags, queries, and statistics.

The most important classes are :class:`Note`, :class:`Category`, :class:`Tag`, and :class:`NoteQuery`.
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace, asdict
from datetime import datetime, timezone
from enum import Enum
import re
from typing import Set, Optional, Iterable, Iterator, List
from urllib.parse import unquote_plus

import shortuuid


DEFAULT_CATEGORY_ID = 'default'
DEFAULT_CATEGORY_NAME = 'General'
DEFAULT_NOTE_TITLE = 'Untitled Note'
DEFAULT_NOTE_COLOR = '#FFFFFF'
DEFAULT_CATEGORY_COLOR = '#2196F3'
DEFAULT_TAG_COLOR = '#FF9800'
DEFAULT_CATEGORY_ICON = 'folder'


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Returns the datetime converted to UTC. Naive datetimes are assumed to already be in UTC."""
    if value is None:
        return None
    if not value.tzinfo:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class NotePriority(Enum):
    LOW = 'low'
    NORMAL = 'normal'
    HIGH = 'high'
    URGENT = 'urgent'

    @property
    def rank(self) -> int:
        """Position of the priority in ascending order of importance, starting at 0."""
        return _PRIORITY_ORDER.index(self)

    @classmethod
    def from_rank(cls, rank: int) -> NotePriority:
        return _PRIORITY_ORDER[rank]

    def __lt__(self, other):
        if not isinstance(other, NotePriority):
            return NotImplemented
        return self.rank < other.rank


_PRIORITY_ORDER = [NotePriority.LOW, NotePriority.NORMAL, NotePriority.HIGH, NotePriority.URGENT]


class SyncStatus(Enum):
    """Synchronization state carried by each note. Nothing in this package performs synchronization."""
    SYNCED = 'synced'
    PENDING_SYNC = 'pending_sync'
    SYNCING = 'syncing'
    SYNC_ERROR = 'sync_error'
    CONFLICT = 'conflict'


@dataclass
class Note:
    """A single note.

    Instances are treated as values: the helper methods such as :meth:`with_tag` return modified copies rather than
    changing the instance. Use :meth:`create` to get a new note with a generated id and current timestamps.
    """

    id: str
    title: str
    content: str = ''

    category_id: Optional[str] = None
    """Id of the category the note belongs to.

    Stores replace None with their default category id when the note is saved.
    """

    tag_ids: Set[str] = field(default_factory=set)
    """Ids of the tags applied to the note. Order is irrelevant."""

    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = None
    """Set on every write; never earlier than :attr:`created_at`."""

    is_favorite: bool = False
    is_archived: bool = False
    color: str = DEFAULT_NOTE_COLOR
    priority: NotePriority = NotePriority.NORMAL
    remind_at: Optional[datetime] = None
    encrypted: bool = False
    """Only a flag; the content is stored as given."""

    sync_status: SyncStatus = SyncStatus.SYNCED
    last_synced: Optional[datetime] = None

    def __post_init__(self):
        self.tag_ids = set(self.tag_ids)
        self.created_at = as_utc(self.created_at)
        self.updated_at = as_utc(self.updated_at) if self.updated_at else self.created_at
        self.remind_at = as_utc(self.remind_at)
        self.last_synced = as_utc(self.last_synced)
        if self.updated_at < self.created_at:
            raise ValueError(f'Note {self.id} has updated_at {self.updated_at} before created_at {self.created_at}')

    @classmethod
    def create(cls, title: str, content: str = '', **kwargs) -> Note:
        now = utcnow()
        kwargs.setdefault('id', shortuuid.uuid())
        kwargs.setdefault('sync_status', SyncStatus.PENDING_SYNC)
        return cls(title=title, content=content, created_at=now, updated_at=now, **kwargs)

    @property
    def has_reminder(self) -> bool:
        return self.remind_at is not None

    def is_overdue(self, now: datetime = None) -> bool:
        return self.has_reminder and self.remind_at < (as_utc(now) if now else utcnow())

    @property
    def word_count(self) -> int:
        return len(self.content.split())

    @property
    def display_title(self) -> str:
        return self.title if self.title.strip() else DEFAULT_NOTE_TITLE

    @property
    def excerpt(self) -> str:
        text = self.content.strip()
        if not text:
            return 'No content'
        if len(text) <= 100:
            return text
        return f'{text[:97]}...'

    def touched(self) -> Note:
        """Returns a copy with :attr:`updated_at` set to now and the sync status reset to pending."""
        return replace(self, updated_at=max(utcnow(), self.created_at), sync_status=SyncStatus.PENDING_SYNC)

    def marked_synced(self) -> Note:
        return replace(self, sync_status=SyncStatus.SYNCED, last_synced=utcnow())

    def with_favorite(self, favorite: bool) -> Note:
        return replace(self, is_favorite=favorite).touched()

    def with_archived(self, archived: bool) -> Note:
        return replace(self, is_archived=archived).touched()

    def with_tag(self, tag_id: str) -> Note:
        if tag_id in self.tag_ids:
            return self
        return replace(self, tag_ids=self.tag_ids | {tag_id}).touched()

    def without_tag(self, tag_id: str) -> Note:
        if tag_id not in self.tag_ids:
            return self
        return replace(self, tag_ids=self.tag_ids - {tag_id}).touched()


@dataclass
class Category:
    """A named group of notes. Every note belongs to exactly one category."""

    id: str
    name: str
    description: str = ''
    color: str = DEFAULT_CATEGORY_COLOR
    icon: str = DEFAULT_CATEGORY_ICON
    created_at: datetime = field(default_factory=utcnow)
    order_index: int = 0
    """Categories are listed in ascending order of this value, then by name."""

    note_count: int = 0
    """Number of notes in the category. This is always computed by the store and ignored when saving."""

    def __post_init__(self):
        self.created_at = as_utc(self.created_at)

    @classmethod
    def create(cls, name: str, **kwargs) -> Category:
        kwargs.setdefault('id', shortuuid.uuid())
        return cls(name=name, created_at=utcnow(), **kwargs)

    @classmethod
    def default(cls, category_id: str = DEFAULT_CATEGORY_ID) -> Category:
        return cls(id=category_id,
                   name=DEFAULT_CATEGORY_NAME,
                   description='Default category for uncategorized notes',
                   created_at=utcnow())

    def is_default(self, default_id: str = DEFAULT_CATEGORY_ID) -> bool:
        return self.id == default_id


@dataclass
class Tag:
    id: str
    name: str
    color: str = DEFAULT_TAG_COLOR

    usage_count: int = 0
    """Number of notes carrying the tag. Always computed by the store."""

    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        self.created_at = as_utc(self.created_at)

    @classmethod
    def create(cls, name: str, **kwargs) -> Tag:
        kwargs.setdefault('id', shortuuid.uuid())
        return cls(name=name, created_at=utcnow(), **kwargs)


PREDEFINED_CATEGORIES = [
    {'name': 'Personal', 'description': 'Personal thoughts and ideas', 'color': '#E91E63', 'icon': 'person'},
    {'name': 'Work', 'description': 'Work-related notes and tasks', 'color': '#2196F3', 'icon': 'work'},
    {'name': 'Ideas', 'description': 'Creative ideas and inspiration', 'color': '#FF9800', 'icon': 'lightbulb'},
    {'name': 'Learning', 'description': 'Study notes and learning materials', 'color': '#4CAF50', 'icon': 'school'},
    {'name': 'Projects', 'description': 'Project planning and documentation', 'color': '#9C27B0',
     'icon': 'assignment'},
    {'name': 'Travel', 'description': 'Travel plans and memories', 'color': '#00BCD4', 'icon': 'flight'},
    {'name': 'Health', 'description': 'Health and wellness notes', 'color': '#8BC34A', 'icon': 'favorite'},
    {'name': 'Finance', 'description': 'Financial planning and budgets', 'color': '#607D8B', 'icon': 'money'},
]
"""Categories that can optionally be created alongside the default category. Their ids are their lowercased names."""

PREDEFINED_TAGS = [
    {'name': 'important', 'color': '#F44336'},
    {'name': 'urgent', 'color': '#FF5722'},
    {'name': 'idea', 'color': '#FF9800'},
    {'name': 'todo', 'color': '#2196F3'},
    {'name': 'completed', 'color': '#4CAF50'},
    {'name': 'meeting', 'color': '#9C27B0'},
    {'name': 'review', 'color': '#673AB7'},
    {'name': 'draft', 'color': '#607D8B'},
    {'name': 'reference', 'color': '#795548'},
    {'name': 'reminder', 'color': '#E91E63'},
    {'name': 'inspiration', 'color': '#FFEB3B'},
    {'name': 'research', 'color': '#00BCD4'},
    {'name': 'personal', 'color': '#8BC34A'},
    {'name': 'work', 'color': '#3F51B5'},
    {'name': 'project', 'color': '#009688'},
]
"""Tags that can optionally be created on startup. Their ids are their names."""


def predefined_categories() -> List[Category]:
    return [Category(id=t['name'].lower(), created_at=utcnow(), order_index=i + 1, **t)
            for i, t in enumerate(PREDEFINED_CATEGORIES)]


def predefined_tags() -> List[Tag]:
    return [Tag(id=t['name'], created_at=utcnow(), **t) for t in PREDEFINED_TAGS]


def note_sort_key(note: Note):
    """Sort key for note listings; use with reverse=True to get the most recently updated first."""
    return note.updated_at, note.id


@dataclass
class NoteQuery:
    """Represents criteria for filtering notes.

    If multiple criteria are specified, the query should only return notes that satisfy *all* the criteria.
    Criteria left as None (or empty) are not applied.
    """

    category_ids: Set[str] = field(default_factory=set)
    """If non-empty, only notes in one of these categories match."""

    tag_ids: Set[str] = field(default_factory=set)
    """If non-empty, only notes that have *all* of these tags match."""

    is_favorite: Optional[bool] = None
    is_archived: Optional[bool] = None

    priorities: Set[NotePriority] = field(default_factory=set)
    """If non-empty, only notes with one of these priorities match."""

    has_reminder: Optional[bool] = None

    is_overdue: Optional[bool] = None
    """If True, only notes whose reminder is in the past match. False is treated as not filtering."""

    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None
    updated_after: Optional[datetime] = None
    updated_before: Optional[datetime] = None

    def __post_init__(self):
        self.category_ids = set(self.category_ids)
        self.tag_ids = set(self.tag_ids)
        self.priorities = {NotePriority(p) for p in self.priorities}
        self.created_after = as_utc(self.created_after)
        self.created_before = as_utc(self.created_before)
        self.updated_after = as_utc(self.updated_after)
        self.updated_before = as_utc(self.updated_before)

    @classmethod
    def parse(cls, strquery) -> NoteQuery:
        """Converts the parameter to a NoteQuery, if it isn't one already.

        Query strings are split on spaces. Each part can be one of the following:

        * ``category:ID1,ID2`` - notes must be in one of the categories
        * ``tag:ID1,ID2`` - notes must have all the tags
        * ``priority:high,urgent`` - notes must have one of the priorities
        * ``favorite`` / ``-favorite`` - notes must (not) be favorites
        * ``archived`` / ``-archived`` - notes must (not) be archived
        * ``reminder`` / ``-reminder`` - notes must (not) have a reminder
        * ``overdue`` - notes must have a reminder in the past
        * ``created>DATE``, ``created<DATE``, ``updated>DATE``, ``updated<DATE`` - ISO 8601 bounds (inclusive)

        Ids are URL-unquoted, so ``tag:to+do`` means the tag id "to do".

        Raises :exc:`ValueError` for unrecognized terms.
        """
        if isinstance(strquery, NoteQuery):
            return strquery
        query = cls()
        for term in (strquery or '').split():
            lower = term.lower()
            negated = lower.startswith('-')
            flag = lower[1:] if negated else lower
            if lower.startswith('category:'):
                query.category_ids.update(unquote_plus(c) for c in term[9:].split(',') if c)
            elif lower.startswith('tag:'):
                query.tag_ids.update(unquote_plus(t) for t in term[4:].split(',') if t)
            elif lower.startswith('priority:'):
                query.priorities.update(NotePriority(p) for p in lower[9:].split(',') if p)
            elif flag == 'favorite':
                query.is_favorite = not negated
            elif flag == 'archived':
                query.is_archived = not negated
            elif flag == 'reminder':
                query.has_reminder = not negated
            elif lower == 'overdue':
                query.is_overdue = True
            else:
                match = re.fullmatch(r'(created|updated)([<>])(.+)', term, re.IGNORECASE)
                if not match:
                    raise ValueError(f'Unrecognized query term: {term}')
                value = as_utc(datetime.fromisoformat(match.group(3)))
                bound = 'after' if match.group(2) == '>' else 'before'
                setattr(query, f'{match.group(1).lower()}_{bound}', value)
        return query

    def is_empty(self) -> bool:
        return self == NoteQuery()

    def apply_filtering(self, notes: Iterable[Note], now: datetime = None) -> Iterator[Note]:
        """Yields the notes from the given iterable which match the criteria of this query."""
        now = as_utc(now) if now else utcnow()
        for note in notes:
            if self.category_ids and note.category_id not in self.category_ids:
                continue
            if self.tag_ids and not self.tag_ids.issubset(note.tag_ids):
                continue
            if self.is_favorite is not None and note.is_favorite != self.is_favorite:
                continue
            if self.is_archived is not None and note.is_archived != self.is_archived:
                continue
            if self.priorities and note.priority not in self.priorities:
                continue
            if self.has_reminder is not None and note.has_reminder != self.has_reminder:
                continue
            if self.is_overdue and not note.is_overdue(now):
                continue
            if self.created_after and note.created_at < self.created_after:
                continue
            if self.created_before and note.created_at > self.created_before:
                continue
            if self.updated_after and note.updated_at < self.updated_after:
                continue
            if self.updated_before and note.updated_at > self.updated_before:
                continue
            yield note


@dataclass
class Statistics:
    """Summary of the notes in a store at the moment it was computed."""

    total_notes: int = 0
    favorite_notes: int = 0
    archived_notes: int = 0
    notes_with_reminders: int = 0
    overdue_notes: int = 0
    total_categories: int = 0
    total_tags: int = 0
    average_note_length: float = 0.0
    total_words: int = 0
    storage_type: str = ''

    def as_json(self) -> dict:
        """Returns a dict representing the instance, suitable for serializing as json."""
        return asdict(self)
