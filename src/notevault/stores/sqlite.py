"""Provides the :class:`SqliteStore` class."""

from collections import namedtuple, defaultdict
from contextlib import contextmanager
import logging
import sqlite3
from typing import List, Optional, Set, Tuple, Iterable

from notevault import events
from notevault.conf import SqliteStoreConf
from notevault.models import Note, Category, Tag, NoteQuery, NotePriority, SyncStatus, Statistics, utcnow
from notevault.records import encode_datetime, decode_datetime
from notevault.stores.base import Store, synchronized, DuplicateIdError, ProtectedEntityError


logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

_SQL_CREATE_SCHEMA = """
CREATE TABLE IF NOT EXISTS categories (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    color TEXT,
    icon TEXT,
    created_at TEXT NOT NULL,
    order_index INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS tags (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    color TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS notes (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    content TEXT NOT NULL DEFAULT '',
    category_id TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    is_favorite INTEGER NOT NULL DEFAULT 0,
    is_archived INTEGER NOT NULL DEFAULT 0,
    color TEXT,
    priority INTEGER NOT NULL DEFAULT 1,
    remind_at TEXT,
    encrypted INTEGER NOT NULL DEFAULT 0,
    sync_status TEXT NOT NULL,
    last_synced TEXT,
    FOREIGN KEY (category_id) REFERENCES categories (id)
);

CREATE TABLE IF NOT EXISTS note_tags (
    note_id TEXT NOT NULL,
    tag_id TEXT NOT NULL,
    PRIMARY KEY (note_id, tag_id),
    FOREIGN KEY (note_id) REFERENCES notes (id) ON DELETE CASCADE,
    FOREIGN KEY (tag_id) REFERENCES tags (id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_notes_category ON notes (category_id);
CREATE INDEX IF NOT EXISTS idx_notes_created_at ON notes (created_at);
CREATE INDEX IF NOT EXISTS idx_notes_updated_at ON notes (updated_at);
CREATE INDEX IF NOT EXISTS idx_notes_favorite ON notes (is_favorite);
CREATE INDEX IF NOT EXISTS idx_notes_archived ON notes (is_archived);
CREATE INDEX IF NOT EXISTS idx_notes_priority ON notes (priority);
CREATE INDEX IF NOT EXISTS idx_notes_sync_status ON notes (sync_status);
CREATE INDEX IF NOT EXISTS idx_note_tags_tag_id ON note_tags (tag_id);
CREATE UNIQUE INDEX IF NOT EXISTS idx_categories_name ON categories (fold(name));
CREATE UNIQUE INDEX IF NOT EXISTS idx_tags_name ON tags (fold(name));
"""

_NOTE_COLUMNS = ['id', 'title', 'content', 'category_id', 'created_at', 'updated_at', 'is_favorite', 'is_archived',
                 'color', 'priority', 'remind_at', 'encrypted', 'sync_status', 'last_synced']
_NoteRow = namedtuple('NoteRow', _NOTE_COLUMNS)

_SQL_SELECT_NOTES = f'SELECT {", ".join(_NOTE_COLUMNS)} FROM notes'
_SQL_INSERT_NOTE = (f'INSERT INTO notes ({", ".join(_NOTE_COLUMNS)})'
                    f' VALUES ({", ".join("?" for _ in _NOTE_COLUMNS)})')
_SQL_UPDATE_NOTE = (f'UPDATE notes SET {", ".join(f"{c} = ?" for c in _NOTE_COLUMNS[1:])}'
                    ' WHERE id = ?')
_SQL_ORDER_NOTES = ' ORDER BY updated_at DESC, id DESC'

_CATEGORY_COLUMNS = ['id', 'name', 'description', 'color', 'icon', 'created_at', 'order_index']
_CategoryRow = namedtuple('CategoryRow', _CATEGORY_COLUMNS)
_SqlCategoryCountRow = namedtuple('SqlCategoryCountRow', _CATEGORY_COLUMNS + ['note_count'])

_SQL_SELECT_CATEGORIES = (f'SELECT {", ".join(f"c.{c}" for c in _CATEGORY_COLUMNS)},'
                          ' (SELECT COUNT(*) FROM notes n WHERE n.category_id = c.id)'
                          ' FROM categories c')
_SQL_INSERT_CATEGORY = (f'INSERT INTO categories ({", ".join(_CATEGORY_COLUMNS)})'
                        f' VALUES ({", ".join("?" for _ in _CATEGORY_COLUMNS)})')
_SQL_UPDATE_CATEGORY = (f'UPDATE categories SET {", ".join(f"{c} = ?" for c in _CATEGORY_COLUMNS[1:])}'
                        ' WHERE id = ?')

_TAG_COLUMNS = ['id', 'name', 'color', 'created_at']
_TagRow = namedtuple('TagRow', _TAG_COLUMNS)
_SqlTagCountRow = namedtuple('SqlTagCountRow', _TAG_COLUMNS + ['usage_count'])

_SQL_SELECT_TAGS = (f'SELECT {", ".join(f"t.{c}" for c in _TAG_COLUMNS)},'
                    ' (SELECT COUNT(*) FROM note_tags nt WHERE nt.tag_id = t.id)'
                    ' FROM tags t')
_SQL_INSERT_TAG = f'INSERT INTO tags ({", ".join(_TAG_COLUMNS)}) VALUES ({", ".join("?" for _ in _TAG_COLUMNS)})'
_SQL_UPDATE_TAG = f'UPDATE tags SET {", ".join(f"{c} = ?" for c in _TAG_COLUMNS[1:])} WHERE id = ?'

_SQL_STATISTICS = """
SELECT COUNT(*),
       COALESCE(SUM(is_favorite), 0),
       COALESCE(SUM(is_archived), 0),
       COALESCE(SUM(CASE WHEN remind_at IS NOT NULL THEN 1 ELSE 0 END), 0),
       COALESCE(SUM(CASE WHEN remind_at IS NOT NULL AND remind_at < ? THEN 1 ELSE 0 END), 0),
       COALESCE(AVG(LENGTH(content)), 0.0),
       COALESCE(SUM(word_count(content)), 0)
FROM notes
"""

_SQL_CLEAR = """
DELETE FROM note_tags;
DELETE FROM notes;
DELETE FROM tags;
DELETE FROM categories;
"""


def _fold(text: Optional[str]) -> Optional[str]:
    return text.lower() if text is not None else None


def _word_count(text: Optional[str]) -> int:
    return len((text or '').split())


def _placeholders(count: int) -> str:
    return ', '.join('?' for _ in range(count))


def _note_row(note: Note) -> _NoteRow:
    return _NoteRow(id=note.id,
                    title=note.title,
                    content=note.content,
                    category_id=note.category_id,
                    created_at=encode_datetime(note.created_at),
                    updated_at=encode_datetime(note.updated_at),
                    is_favorite=note.is_favorite,
                    is_archived=note.is_archived,
                    color=note.color,
                    priority=note.priority.rank,
                    remind_at=encode_datetime(note.remind_at),
                    encrypted=note.encrypted,
                    sync_status=note.sync_status.value,
                    last_synced=encode_datetime(note.last_synced))


def _note_from_row(row: _NoteRow, tag_ids: Iterable[str]) -> Note:
    return Note(id=row.id,
                title=row.title,
                content=row.content or '',
                category_id=row.category_id,
                tag_ids=set(tag_ids),
                created_at=decode_datetime(row.created_at),
                updated_at=decode_datetime(row.updated_at),
                is_favorite=bool(row.is_favorite),
                is_archived=bool(row.is_archived),
                color=row.color,
                priority=NotePriority.from_rank(row.priority),
                remind_at=decode_datetime(row.remind_at),
                encrypted=bool(row.encrypted),
                sync_status=SyncStatus(row.sync_status),
                last_synced=decode_datetime(row.last_synced))


def _category_row(category: Category) -> _CategoryRow:
    return _CategoryRow(id=category.id,
                        name=category.name,
                        description=category.description,
                        color=category.color,
                        icon=category.icon,
                        created_at=encode_datetime(category.created_at),
                        order_index=category.order_index)


def _category_from_row(row: _SqlCategoryCountRow) -> Category:
    return Category(id=row.id,
                    name=row.name,
                    description=row.description,
                    color=row.color,
                    icon=row.icon,
                    created_at=decode_datetime(row.created_at),
                    order_index=row.order_index,
                    note_count=row.note_count)


def _tag_row(tag: Tag) -> _TagRow:
    return _TagRow(id=tag.id, name=tag.name, color=tag.color, created_at=encode_datetime(tag.created_at))


def _tag_from_row(row: _SqlTagCountRow) -> Tag:
    return Tag(id=row.id,
               name=row.name,
               color=row.color,
               created_at=decode_datetime(row.created_at),
               usage_count=row.usage_count)


def _where(query: NoteQuery, now) -> Tuple[str, list]:
    """Builds a WHERE clause (without the keyword) combining all the query's criteria with AND."""
    clauses = []
    params = []
    if query.category_ids:
        clauses.append(f'category_id IN ({_placeholders(len(query.category_ids))})')
        params.extend(sorted(query.category_ids))
    if query.tag_ids:
        clauses.append('id IN (SELECT note_id FROM note_tags'
                       f' WHERE tag_id IN ({_placeholders(len(query.tag_ids))})'
                       ' GROUP BY note_id HAVING COUNT(DISTINCT tag_id) = ?)')
        params.extend(sorted(query.tag_ids))
        params.append(len(query.tag_ids))
    if query.is_favorite is not None:
        clauses.append('is_favorite = ?')
        params.append(query.is_favorite)
    if query.is_archived is not None:
        clauses.append('is_archived = ?')
        params.append(query.is_archived)
    if query.priorities:
        clauses.append(f'priority IN ({_placeholders(len(query.priorities))})')
        params.extend(sorted(p.rank for p in query.priorities))
    if query.has_reminder is not None:
        clauses.append('remind_at IS NOT NULL' if query.has_reminder else 'remind_at IS NULL')
    if query.is_overdue:
        clauses.append('remind_at IS NOT NULL AND remind_at < ?')
        params.append(encode_datetime(now))
    for column, bound, op in (('created_at', query.created_after, '>='),
                              ('created_at', query.created_before, '<='),
                              ('updated_at', query.updated_after, '>='),
                              ('updated_at', query.updated_before, '<=')):
        if bound:
            clauses.append(f'{column} {op} ?')
            params.append(encode_datetime(bound))
    return ' AND '.join(clauses) or '1', params


class SqliteStore(Store):
    """Keeps notes, categories, and tags in a SQLite database.

    Tags are linked to notes through the ``note_tags`` table, whose rows are removed automatically when either
    the note or the tag is deleted. Every change that touches several rows runs in a single transaction, so it
    either happens completely or not at all; that includes :meth:`import_data` and the batch operations.

    Remember to call :meth:`close` when done with the instance, or use the instance as a context manager.

    .. attribute:: conf
       :type: notevault.conf.SqliteStoreConf
    """

    storage_type = 'sqlite'

    def __init__(self, conf: SqliteStoreConf):
        super().__init__(conf)
        if not conf.database_path:
            raise ValueError('`database_path` must be set in SqliteStoreConf.')
        self.connection = None
        self._tx_depth = 0
        self._connect()
        with self._lock:
            with self._transaction():
                self._seed()

    def _connect(self):
        # transactions are managed explicitly by _transaction
        self.connection = sqlite3.connect(self.conf.database_path, isolation_level=None, check_same_thread=False)
        self.connection.execute('PRAGMA foreign_keys = ON')
        # case folding for names and search, matching str.lower() beyond ASCII
        self.connection.create_function('fold', 1, _fold, deterministic=True)
        self.connection.create_function('word_count', 1, _word_count)
        self.connection.executescript(_SQL_CREATE_SCHEMA)
        version = self.connection.execute('PRAGMA user_version').fetchone()[0]
        if version == 0:
            self.connection.execute(f'PRAGMA user_version = {SCHEMA_VERSION}')
        elif version != SCHEMA_VERSION:
            raise ValueError(f'Unsupported schema version {version} in {self.conf.database_path}')

    @contextmanager
    def _transaction(self):
        """Yields a cursor inside a transaction. Nested uses join the outermost transaction."""
        if self._tx_depth:
            self._tx_depth += 1
            try:
                yield self.connection.cursor()
            finally:
                self._tx_depth -= 1
            return
        self.connection.execute('BEGIN')
        self._tx_depth = 1
        try:
            yield self.connection.cursor()
        except BaseException:
            self.connection.execute('ROLLBACK')
            raise
        else:
            self.connection.execute('COMMIT')
        finally:
            self._tx_depth = 0

    # Notes

    def _select_notes(self, where: str = '1', params: list = ()) -> List[Note]:
        cursor = self.connection.cursor()
        cursor.execute(f'SELECT note_id, tag_id FROM note_tags WHERE note_id IN (SELECT id FROM notes WHERE {where})',
                       params)
        tags_by_note = defaultdict(set)
        for note_id, tag_id in cursor:
            tags_by_note[note_id].add(tag_id)
        cursor.execute(f'{_SQL_SELECT_NOTES} WHERE {where}{_SQL_ORDER_NOTES}', params)
        rows = [_NoteRow(*r) for r in cursor.fetchall()]
        return [_note_from_row(r, tags_by_note[r.id]) for r in rows]

    def _note_exists(self, note_id: str) -> bool:
        cursor = self.connection.cursor()
        cursor.execute('SELECT 1 FROM notes WHERE id = ?', (note_id,))
        return cursor.fetchone() is not None

    def _insert_notes(self, notes: List[Note]) -> List[Note]:
        seen = set()
        prepared = []
        for note in notes:
            if note.id in seen or self._note_exists(note.id):
                raise DuplicateIdError('note', note.id)
            seen.add(note.id)
            prepared.append(self._checked_note(note))
        with self._transaction() as cursor:
            for note in prepared:
                cursor.execute(_SQL_INSERT_NOTE, _note_row(note))
                cursor.executemany('INSERT INTO note_tags (note_id, tag_id) VALUES (?, ?)',
                                   ((note.id, t) for t in sorted(note.tag_ids)))
        for note in prepared:
            logger.debug('Created note %s', note.id)
            self._record(events.NOTE_CREATED, {'note_id': note.id, 'category_id': note.category_id})
        return prepared

    def _update_notes(self, notes: List[Note]) -> None:
        prepared = []
        for note in notes:
            if not self._note_exists(note.id):
                logger.warning('Ignoring update of nonexistent note %s', note.id)
                continue
            prepared.append(self._checked_update(note))
        with self._transaction() as cursor:
            for note in prepared:
                row = _note_row(note)
                cursor.execute(_SQL_UPDATE_NOTE, row[1:] + (row.id,))
                cursor.execute('DELETE FROM note_tags WHERE note_id = ?', (note.id,))
                cursor.executemany('INSERT INTO note_tags (note_id, tag_id) VALUES (?, ?)',
                                   ((note.id, t) for t in sorted(note.tag_ids)))
        for note in prepared:
            logger.debug('Updated note %s', note.id)
            self._record(events.NOTE_UPDATED, {'note_id': note.id})

    @synchronized
    def create_note(self, note: Note) -> str:
        return self._insert_notes([note])[0].id

    @synchronized
    def create_notes_batch(self, notes: List[Note]) -> None:
        self._insert_notes(notes)

    @synchronized
    def update_note(self, note: Note) -> None:
        self._update_notes([note])

    @synchronized
    def update_notes_batch(self, notes: List[Note]) -> None:
        self._update_notes(notes)

    @synchronized
    def delete_note(self, note_id: str) -> None:
        with self._transaction() as cursor:
            cursor.execute('DELETE FROM notes WHERE id = ?', (note_id,))
            deleted = cursor.rowcount
        if deleted:
            logger.debug('Deleted note %s', note_id)
            self._record(events.NOTE_DELETED, {'note_id': note_id})

    @synchronized
    def get_note(self, note_id: str) -> Optional[Note]:
        notes = self._select_notes('id = ?', [note_id])
        return notes[0] if notes else None

    @synchronized
    def get_all_notes(self) -> List[Note]:
        return self._select_notes()

    @synchronized
    def query_notes(self, query: NoteQuery) -> List[Note]:
        where, params = _where(NoteQuery.parse(query), utcnow())
        return self._select_notes(where, params)

    @synchronized
    def search_notes(self, text: str) -> List[Note]:
        text = (text or '').strip()
        if not text:
            return []
        needle = text.lower()
        results = self._select_notes('INSTR(fold(title), ?) > 0 OR INSTR(fold(content), ?) > 0', [needle, needle])
        self._record(events.SEARCH_PERFORMED, {'query': text, 'results': len(results)})
        return results

    # Categories

    def _category_exists(self, category_id: str) -> bool:
        cursor = self.connection.cursor()
        cursor.execute('SELECT 1 FROM categories WHERE id = ?', (category_id,))
        return cursor.fetchone() is not None

    def _category_ids_named(self, name: str) -> Set[str]:
        cursor = self.connection.cursor()
        cursor.execute('SELECT id FROM categories WHERE fold(name) = ?', (name.lower(),))
        return {r[0] for r in cursor}

    @synchronized
    def create_category(self, category: Category) -> str:
        if self._category_exists(category.id):
            raise DuplicateIdError('category', category.id)
        self._check_category_name(category)
        with self._transaction() as cursor:
            cursor.execute(_SQL_INSERT_CATEGORY, _category_row(category))
        logger.debug('Created category %s', category.id)
        self._record(events.CATEGORY_CREATED, {'category_id': category.id, 'name': category.name})
        return category.id

    @synchronized
    def update_category(self, category: Category) -> None:
        if not self._category_exists(category.id):
            logger.warning('Ignoring update of nonexistent category %s', category.id)
            return
        self._check_category_name(category)
        row = _category_row(category)
        with self._transaction() as cursor:
            cursor.execute(_SQL_UPDATE_CATEGORY, row[1:] + (row.id,))
        logger.debug('Updated category %s', category.id)

    @synchronized
    def delete_category(self, category_id: str) -> None:
        if category_id == self.default_category_id:
            raise ProtectedEntityError('category', category_id)
        if not self._category_exists(category_id):
            return
        with self._transaction() as cursor:
            cursor.execute('UPDATE notes SET category_id = ? WHERE category_id = ?',
                           (self.default_category_id, category_id))
            moved = cursor.rowcount
            cursor.execute('DELETE FROM categories WHERE id = ?', (category_id,))
        logger.info('Deleted category %s and moved %d note(s) to %s', category_id, moved, self.default_category_id)
        self._record(events.CATEGORY_DELETED, {'category_id': category_id, 'moved_notes': moved})

    @synchronized
    def get_category(self, category_id: str) -> Optional[Category]:
        cursor = self.connection.cursor()
        cursor.execute(f'{_SQL_SELECT_CATEGORIES} WHERE c.id = ?', (category_id,))
        row = cursor.fetchone()
        return _category_from_row(_SqlCategoryCountRow(*row)) if row else None

    @synchronized
    def get_all_categories(self) -> List[Category]:
        cursor = self.connection.cursor()
        cursor.execute(_SQL_SELECT_CATEGORIES)
        return self._sorted_categories(_category_from_row(_SqlCategoryCountRow(*r)) for r in cursor.fetchall())

    # Tags

    def _tag_ids_existing(self, tag_ids: Set[str]) -> Set[str]:
        if not tag_ids:
            return set()
        cursor = self.connection.cursor()
        cursor.execute(f'SELECT id FROM tags WHERE id IN ({_placeholders(len(tag_ids))})', sorted(tag_ids))
        return {r[0] for r in cursor}

    def _tag_ids_named(self, name: str) -> Set[str]:
        cursor = self.connection.cursor()
        cursor.execute('SELECT id FROM tags WHERE fold(name) = ?', (name.lower(),))
        return {r[0] for r in cursor}

    @synchronized
    def create_tag(self, tag: Tag) -> str:
        if self._tag_ids_existing({tag.id}):
            raise DuplicateIdError('tag', tag.id)
        self._check_tag_name(tag)
        with self._transaction() as cursor:
            cursor.execute(_SQL_INSERT_TAG, _tag_row(tag))
        logger.debug('Created tag %s', tag.id)
        self._record(events.TAG_CREATED, {'tag_id': tag.id, 'name': tag.name})
        return tag.id

    @synchronized
    def update_tag(self, tag: Tag) -> None:
        if not self._tag_ids_existing({tag.id}):
            logger.warning('Ignoring update of nonexistent tag %s', tag.id)
            return
        self._check_tag_name(tag)
        row = _tag_row(tag)
        with self._transaction() as cursor:
            cursor.execute(_SQL_UPDATE_TAG, row[1:] + (row.id,))
        logger.debug('Updated tag %s', tag.id)

    @synchronized
    def delete_tag(self, tag_id: str) -> None:
        if not self._tag_ids_existing({tag_id}):
            return
        with self._transaction() as cursor:
            cursor.execute('SELECT COUNT(*) FROM note_tags WHERE tag_id = ?', (tag_id,))
            affected = cursor.fetchone()[0]
            cursor.execute('DELETE FROM tags WHERE id = ?', (tag_id,))
        logger.info('Deleted tag %s and removed it from %d note(s)', tag_id, affected)
        self._record(events.TAG_DELETED, {'tag_id': tag_id, 'affected_notes': affected})

    @synchronized
    def get_tag(self, tag_id: str) -> Optional[Tag]:
        cursor = self.connection.cursor()
        cursor.execute(f'{_SQL_SELECT_TAGS} WHERE t.id = ?', (tag_id,))
        row = cursor.fetchone()
        return _tag_from_row(_SqlTagCountRow(*row)) if row else None

    @synchronized
    def get_all_tags(self) -> List[Tag]:
        cursor = self.connection.cursor()
        cursor.execute(_SQL_SELECT_TAGS)
        return self._sorted_tags(_tag_from_row(_SqlTagCountRow(*r)) for r in cursor.fetchall())

    # Utility

    @synchronized
    def statistics(self) -> Statistics:
        cursor = self.connection.cursor()
        cursor.execute(_SQL_STATISTICS, (encode_datetime(utcnow()),))
        total, favorites, archived, reminders, overdue, average, words = cursor.fetchone()
        cursor.execute('SELECT COUNT(*) FROM categories')
        categories = cursor.fetchone()[0]
        cursor.execute('SELECT COUNT(*) FROM tags')
        tags = cursor.fetchone()[0]
        return Statistics(total_notes=total,
                          favorite_notes=favorites,
                          archived_notes=archived,
                          notes_with_reminders=reminders,
                          overdue_notes=overdue,
                          total_categories=categories,
                          total_tags=tags,
                          average_note_length=float(average),
                          total_words=words,
                          storage_type=self.storage_type)

    def _clear(self) -> None:
        with self._transaction() as cursor:
            for statement in _SQL_CLEAR.strip().splitlines():
                cursor.execute(statement)
        logger.info('Cleared all data')

    @synchronized
    def clear_all_data(self) -> None:
        with self._transaction():
            super().clear_all_data()

    @synchronized
    def import_data(self, data: dict) -> None:
        with self._transaction():
            super().import_data(data)

    @synchronized
    def close(self):
        if self.connection:
            self.connection.close()
            self.connection = None
