"""Converts between domain entities and plain records, and builds/validates export snapshots.

Records are dicts containing only JSON-compatible values (strings, numbers, booleans, lists, None), so the same
encoding is used for the embedded store's box files and for exported snapshots.
"""

from datetime import datetime
from typing import Optional, List, Dict, Any, NamedTuple

from notevault.errors import InvalidSnapshotError
from notevault.models import Note, Category, Tag, NotePriority, SyncStatus, utcnow, as_utc, DEFAULT_NOTE_COLOR,\
    DEFAULT_CATEGORY_COLOR, DEFAULT_CATEGORY_ICON, DEFAULT_TAG_COLOR, DEFAULT_CATEGORY_NAME


EXPORT_VERSION = '1.0'


def encode_datetime(value: Optional[datetime]) -> Optional[str]:
    """Returns a fixed-width ISO 8601 string in UTC, so encoded values sort chronologically."""
    if value is None:
        return None
    return as_utc(value).isoformat(timespec='microseconds')


def decode_datetime(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if value.endswith('Z'):
        value = value[:-1] + '+00:00'
    return as_utc(datetime.fromisoformat(value))


def note_to_record(note: Note) -> dict:
    return {
        'id': note.id,
        'title': note.title,
        'content': note.content,
        'category_id': note.category_id,
        'tag_ids': sorted(note.tag_ids),
        'created_at': encode_datetime(note.created_at),
        'updated_at': encode_datetime(note.updated_at),
        'is_favorite': note.is_favorite,
        'is_archived': note.is_archived,
        'color': note.color,
        'priority': note.priority.value,
        'remind_at': encode_datetime(note.remind_at),
        'encrypted': note.encrypted,
        'sync_status': note.sync_status.value,
        'last_synced': encode_datetime(note.last_synced),
    }


def note_from_record(record: dict) -> Note:
    return Note(
        id=record['id'],
        title=record['title'],
        content=record.get('content') or '',
        category_id=record.get('category_id'),
        tag_ids=set(record.get('tag_ids') or ()),
        created_at=decode_datetime(record['created_at']),
        updated_at=decode_datetime(record.get('updated_at') or record['created_at']),
        is_favorite=bool(record.get('is_favorite', False)),
        is_archived=bool(record.get('is_archived', False)),
        color=record.get('color') or DEFAULT_NOTE_COLOR,
        priority=NotePriority(record.get('priority') or NotePriority.NORMAL.value),
        remind_at=decode_datetime(record.get('remind_at')),
        encrypted=bool(record.get('encrypted', False)),
        sync_status=SyncStatus(record.get('sync_status') or SyncStatus.SYNCED.value),
        last_synced=decode_datetime(record.get('last_synced')),
    )


def category_to_record(category: Category) -> dict:
    return {
        'id': category.id,
        'name': category.name,
        'description': category.description,
        'color': category.color,
        'icon': category.icon,
        'created_at': encode_datetime(category.created_at),
        'order_index': category.order_index,
        'note_count': category.note_count,
    }


def category_from_record(record: dict) -> Category:
    return Category(
        id=record['id'],
        name=record['name'],
        description=record.get('description') or '',
        color=record.get('color') or DEFAULT_CATEGORY_COLOR,
        icon=record.get('icon') or DEFAULT_CATEGORY_ICON,
        created_at=decode_datetime(record['created_at']),
        order_index=int(record.get('order_index') or 0),
        note_count=int(record.get('note_count') or 0),
    )


def tag_to_record(tag: Tag) -> dict:
    return {
        'id': tag.id,
        'name': tag.name,
        'color': tag.color,
        'usage_count': tag.usage_count,
        'created_at': encode_datetime(tag.created_at),
    }


def tag_from_record(record: dict) -> Tag:
    return Tag(
        id=record['id'],
        name=record['name'],
        color=record.get('color') or DEFAULT_TAG_COLOR,
        usage_count=int(record.get('usage_count') or 0),
        created_at=decode_datetime(record['created_at']),
    )


def make_snapshot(notes: List[Note], categories: List[Category], tags: List[Tag], storage_type: str) -> dict:
    """Builds the export structure. Entities are sorted by id so repeated exports of the same data are identical."""
    return {
        'notes': [note_to_record(n) for n in sorted(notes, key=lambda n: n.id)],
        'categories': [category_to_record(c) for c in sorted(categories, key=lambda c: c.id)],
        'tags': [tag_to_record(t) for t in sorted(tags, key=lambda t: t.id)],
        'export_timestamp': encode_datetime(utcnow()),
        'export_version': EXPORT_VERSION,
        'storage_type': storage_type,
    }


class Snapshot(NamedTuple):
    categories: List[Category]
    tags: List[Tag]
    notes: List[Note]


def _parse_entities(data: Dict[str, Any], key: str, parse) -> list:
    raw = data.get(key) or []
    if not isinstance(raw, list):
        raise InvalidSnapshotError(f'"{key}" must be a list')
    result = []
    ids = set()
    for index, record in enumerate(raw):
        if not isinstance(record, dict):
            raise InvalidSnapshotError(f'{key}[{index}] is not an object')
        try:
            entity = parse(record)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise InvalidSnapshotError(f'{key}[{index}] is malformed: {e!r}') from e
        label = entity.title if isinstance(entity, Note) else entity.name
        if not (isinstance(entity.id, str) and isinstance(label, str)):
            raise InvalidSnapshotError(f'{key}[{index}] has a non-text id or name')
        if entity.id in ids:
            raise InvalidSnapshotError(f'{key}[{index}] repeats id {entity.id}')
        ids.add(entity.id)
        result.append(entity)
    return result


def _check_unique_names(entities, kind: str) -> None:
    seen = set()
    for entity in entities:
        folded = entity.name.lower()
        if folded in seen:
            raise InvalidSnapshotError(f'Duplicate {kind} name: {entity.name}')
        seen.add(folded)


def parse_snapshot(data: Any, default_category_id: str) -> Snapshot:
    """Validates an exported snapshot and converts it to entities, without touching any store.

    Notes without a category are assigned to ``default_category_id``. Every category and tag referenced by a note
    must be present in the snapshot (the default category may be omitted, since stores always create it).

    Raises :exc:`notevault.stores.base.InvalidSnapshotError` if anything is wrong.
    """
    if not isinstance(data, dict):
        raise InvalidSnapshotError('Snapshot must be an object')
    version = data.get('export_version', EXPORT_VERSION)
    if str(version).split('.')[0] != EXPORT_VERSION.split('.')[0]:
        raise InvalidSnapshotError(f'Unsupported export version: {version}')
    categories = _parse_entities(data, 'categories', category_from_record)
    tags = _parse_entities(data, 'tags', tag_from_record)
    notes = _parse_entities(data, 'notes', note_from_record)
    _check_unique_names(categories, 'category')
    _check_unique_names(tags, 'tag')
    if not any(c.id == default_category_id for c in categories):
        for category in categories:
            if category.name.lower() == DEFAULT_CATEGORY_NAME.lower():
                raise InvalidSnapshotError(f'Category {category.id} uses the name reserved for the default category')

    category_ids = {c.id for c in categories} | {default_category_id}
    tag_ids = {t.id for t in tags}
    for note in notes:
        if note.category_id is None:
            note.category_id = default_category_id
        if note.category_id not in category_ids:
            raise InvalidSnapshotError(f'Note {note.id} refers to unknown category {note.category_id}')
        missing = note.tag_ids - tag_ids
        if missing:
            raise InvalidSnapshotError(f'Note {note.id} refers to unknown tags {sorted(missing)}')
    return Snapshot(categories=categories, tags=tags, notes=notes)
