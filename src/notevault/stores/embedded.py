"""Provides the :class:`EmbeddedStore` class."""

from collections import Counter
from dataclasses import replace
import logging
from typing import List, Optional, Set, Dict, Iterator, Iterable

from notevault import events
from notevault.boxes import BoxSet, BoxCmd, PutCmd, PutAllCmd, DeleteCmd, ClearCmd
from notevault.conf import EmbeddedStoreConf
from notevault.models import Note, Category, Tag, NoteQuery, Statistics, utcnow
from notevault.records import note_to_record, note_from_record, category_to_record, category_from_record,\
    tag_to_record, tag_from_record
from notevault.stores.base import Store, synchronized, DuplicateIdError, ProtectedEntityError


logger = logging.getLogger(__name__)

NOTES = 'notes'
CATEGORIES = 'categories'
TAGS = 'tags'


class EmbeddedStore(Store):
    """Keeps notes, categories, and tags in three :class:`notevault.boxes.Box` instances.

    If :attr:`notevault.conf.EmbeddedStoreConf.directory` is set, each box is saved as a YAML file in that
    directory; otherwise everything lives in memory and is lost when the instance is discarded.

    Each tag record stores a ``usage_count`` that is adjusted as notes are created, updated, and deleted, but reads
    always recount from the notes, so the stored value is never relied on.

    **Changes that touch several records are not atomic.** Deleting a category, for example, rewrites each of its
    notes and then removes the category; if the process dies partway through, some notes may still point at the
    deleted category. Configure :attr:`notevault.conf.EmbeddedStoreConf.journal_path` to have unfinished changes
    completed the next time the store is opened.

    Filtering and search scan every note, which is fine for the few thousand notes a person typically has.

    .. attribute:: conf
       :type: notevault.conf.EmbeddedStoreConf
    """

    storage_type = 'embedded'

    def __init__(self, conf: EmbeddedStoreConf):
        super().__init__(conf)
        self.boxes = BoxSet([NOTES, CATEGORIES, TAGS], conf.directory, conf.journal_path)
        with self._lock:
            self._seed()

    def _notes(self) -> Iterator[Note]:
        return (note_from_record(r) for r in self.boxes[NOTES].values())

    def _counts(self):
        by_category = Counter()
        by_tag = Counter()
        for note in self._notes():
            by_category[note.category_id] += 1
            by_tag.update(note.tag_ids)
        return by_category, by_tag

    def _usage_cmds(self, deltas: Dict[str, int]) -> List[BoxCmd]:
        """Returns commands that store adjusted usage counts for the tags."""
        cmds = []
        for tag_id in sorted(deltas):
            if not deltas[tag_id]:
                continue
            record = self.boxes[TAGS].get(tag_id)
            if record is None:
                continue
            record['usage_count'] = max(0, (record.get('usage_count') or 0) + deltas[tag_id])
            cmds.append(PutCmd(TAGS, tag_id, record))
        return cmds

    @staticmethod
    def _rewrite_cmds(notes: List[Note]) -> List[BoxCmd]:
        """Returns one command storing all the notes, so the notes file is written once."""
        return [PutAllCmd(NOTES, {n.id: note_to_record(n) for n in notes})] if notes else []

    # Notes

    def _prepare_creates(self, notes: Iterable[Note]) -> List[Note]:
        prepared = []
        seen = set()
        for note in notes:
            if note.id in self.boxes[NOTES] or note.id in seen:
                raise DuplicateIdError('note', note.id)
            seen.add(note.id)
            prepared.append(self._checked_note(note))
        return prepared

    def _prepare_updates(self, notes: Iterable[Note]) -> Dict[str, Note]:
        prepared = {}
        for note in notes:
            if note.id not in self.boxes[NOTES]:
                logger.warning('Ignoring update of nonexistent note %s', note.id)
                continue
            prepared[note.id] = self._checked_update(note)
        return prepared

    def _update_cmds(self, notes: Dict[str, Note]) -> List[BoxCmd]:
        deltas = Counter()
        for note in notes.values():
            old_tags = set(self.boxes[NOTES].get(note.id)['tag_ids'] or ())
            deltas.subtract(old_tags - note.tag_ids)
            deltas.update(note.tag_ids - old_tags)
        records = {n.id: note_to_record(n) for n in notes.values()}
        return [PutAllCmd(NOTES, records)] + self._usage_cmds(deltas)

    @synchronized
    def create_note(self, note: Note) -> str:
        note, = self._prepare_creates([note])
        self.boxes.apply([PutCmd(NOTES, note.id, note_to_record(note))]
                         + self._usage_cmds(Counter(note.tag_ids)))
        logger.debug('Created note %s', note.id)
        self._record(events.NOTE_CREATED, {'note_id': note.id, 'category_id': note.category_id})
        return note.id

    @synchronized
    def create_notes_batch(self, notes: List[Note]) -> None:
        notes = self._prepare_creates(notes)
        if not notes:
            return
        deltas = Counter()
        for note in notes:
            deltas.update(note.tag_ids)
        self.boxes.apply([PutAllCmd(NOTES, {n.id: note_to_record(n) for n in notes})] + self._usage_cmds(deltas))
        logger.debug('Created %d notes', len(notes))
        for note in notes:
            self._record(events.NOTE_CREATED, {'note_id': note.id, 'category_id': note.category_id})

    @synchronized
    def update_note(self, note: Note) -> None:
        self.update_notes_batch([note])

    @synchronized
    def update_notes_batch(self, notes: List[Note]) -> None:
        prepared = self._prepare_updates(notes)
        if not prepared:
            return
        self.boxes.apply(self._update_cmds(prepared))
        for note_id in prepared:
            logger.debug('Updated note %s', note_id)
            self._record(events.NOTE_UPDATED, {'note_id': note_id})

    @synchronized
    def delete_note(self, note_id: str) -> None:
        record = self.boxes[NOTES].get(note_id)
        if record is None:
            return
        deltas = Counter({t: -1 for t in record['tag_ids'] or ()})
        self.boxes.apply([DeleteCmd(NOTES, note_id)] + self._usage_cmds(deltas))
        logger.debug('Deleted note %s', note_id)
        self._record(events.NOTE_DELETED, {'note_id': note_id})

    @synchronized
    def get_note(self, note_id: str) -> Optional[Note]:
        record = self.boxes[NOTES].get(note_id)
        return note_from_record(record) if record else None

    @synchronized
    def get_all_notes(self) -> List[Note]:
        return self._sorted_notes(self._notes())

    @synchronized
    def query_notes(self, query: NoteQuery) -> List[Note]:
        return self._sorted_notes(NoteQuery.parse(query).apply_filtering(self._notes()))

    @synchronized
    def search_notes(self, text: str) -> List[Note]:
        text = (text or '').strip()
        if not text:
            return []
        needle = text.lower()
        results = self._sorted_notes(n for n in self._notes()
                                     if needle in n.title.lower() or needle in n.content.lower())
        self._record(events.SEARCH_PERFORMED, {'query': text, 'results': len(results)})
        return results

    # Categories

    def _category_exists(self, category_id: str) -> bool:
        return category_id in self.boxes[CATEGORIES]

    def _category_ids_named(self, name: str) -> Set[str]:
        folded = name.lower()
        return {r['id'] for r in self.boxes[CATEGORIES].values() if r['name'].lower() == folded}

    @synchronized
    def create_category(self, category: Category) -> str:
        if self._category_exists(category.id):
            raise DuplicateIdError('category', category.id)
        self._check_category_name(category)
        self.boxes.apply([PutCmd(CATEGORIES, category.id, category_to_record(replace(category, note_count=0)))])
        logger.debug('Created category %s', category.id)
        self._record(events.CATEGORY_CREATED, {'category_id': category.id, 'name': category.name})
        return category.id

    @synchronized
    def update_category(self, category: Category) -> None:
        if not self._category_exists(category.id):
            logger.warning('Ignoring update of nonexistent category %s', category.id)
            return
        self._check_category_name(category)
        self.boxes.apply([PutCmd(CATEGORIES, category.id, category_to_record(replace(category, note_count=0)))])
        logger.debug('Updated category %s', category.id)

    @synchronized
    def delete_category(self, category_id: str) -> None:
        if category_id == self.default_category_id:
            raise ProtectedEntityError('category', category_id)
        if not self._category_exists(category_id):
            return
        moved = [replace(n, category_id=self.default_category_id)
                 for n in self._notes() if n.category_id == category_id]
        self.boxes.apply(self._rewrite_cmds(moved) + [DeleteCmd(CATEGORIES, category_id)])
        logger.info('Deleted category %s and moved %d note(s) to %s',
                    category_id, len(moved), self.default_category_id)
        self._record(events.CATEGORY_DELETED, {'category_id': category_id, 'moved_notes': len(moved)})

    @synchronized
    def get_category(self, category_id: str) -> Optional[Category]:
        record = self.boxes[CATEGORIES].get(category_id)
        if record is None:
            return None
        count = sum(1 for n in self._notes() if n.category_id == category_id)
        return replace(category_from_record(record), note_count=count)

    @synchronized
    def get_all_categories(self) -> List[Category]:
        by_category, _ = self._counts()
        return self._sorted_categories(replace(category_from_record(r), note_count=by_category[r['id']])
                                       for r in self.boxes[CATEGORIES].values())

    # Tags

    def _tag_ids_existing(self, tag_ids: Set[str]) -> Set[str]:
        return {t for t in tag_ids if t in self.boxes[TAGS]}

    def _tag_ids_named(self, name: str) -> Set[str]:
        folded = name.lower()
        return {r['id'] for r in self.boxes[TAGS].values() if r['name'].lower() == folded}

    @synchronized
    def create_tag(self, tag: Tag) -> str:
        if tag.id in self.boxes[TAGS]:
            raise DuplicateIdError('tag', tag.id)
        self._check_tag_name(tag)
        self.boxes.apply([PutCmd(TAGS, tag.id, tag_to_record(replace(tag, usage_count=0)))])
        logger.debug('Created tag %s', tag.id)
        self._record(events.TAG_CREATED, {'tag_id': tag.id, 'name': tag.name})
        return tag.id

    @synchronized
    def update_tag(self, tag: Tag) -> None:
        existing = self.boxes[TAGS].get(tag.id)
        if existing is None:
            logger.warning('Ignoring update of nonexistent tag %s', tag.id)
            return
        self._check_tag_name(tag)
        stored = replace(tag, usage_count=existing.get('usage_count') or 0)
        self.boxes.apply([PutCmd(TAGS, tag.id, tag_to_record(stored))])
        logger.debug('Updated tag %s', tag.id)

    @synchronized
    def delete_tag(self, tag_id: str) -> None:
        if tag_id not in self.boxes[TAGS]:
            return
        stripped = [replace(n, tag_ids=n.tag_ids - {tag_id}) for n in self._notes() if tag_id in n.tag_ids]
        self.boxes.apply(self._rewrite_cmds(stripped) + [DeleteCmd(TAGS, tag_id)])
        logger.info('Deleted tag %s and removed it from %d note(s)', tag_id, len(stripped))
        self._record(events.TAG_DELETED, {'tag_id': tag_id, 'affected_notes': len(stripped)})

    @synchronized
    def get_tag(self, tag_id: str) -> Optional[Tag]:
        record = self.boxes[TAGS].get(tag_id)
        if record is None:
            return None
        count = sum(1 for n in self._notes() if tag_id in n.tag_ids)
        return replace(tag_from_record(record), usage_count=count)

    @synchronized
    def get_all_tags(self) -> List[Tag]:
        _, by_tag = self._counts()
        return self._sorted_tags(replace(tag_from_record(r), usage_count=by_tag[r['id']])
                                 for r in self.boxes[TAGS].values())

    # Utility

    @synchronized
    def statistics(self) -> Statistics:
        now = utcnow()
        notes = list(self._notes())
        stats = Statistics(total_notes=len(notes),
                           total_categories=len(self.boxes[CATEGORIES]),
                           total_tags=len(self.boxes[TAGS]),
                           storage_type=self.storage_type)
        for note in notes:
            stats.favorite_notes += note.is_favorite
            stats.archived_notes += note.is_archived
            stats.notes_with_reminders += note.has_reminder
            stats.overdue_notes += note.is_overdue(now)
            stats.total_words += note.word_count
        if notes:
            stats.average_note_length = sum(len(n.content) for n in notes) / len(notes)
        return stats

    def _clear(self) -> None:
        self.boxes.apply([ClearCmd(NOTES), ClearCmd(CATEGORIES), ClearCmd(TAGS)])
        logger.info('Cleared all data')
