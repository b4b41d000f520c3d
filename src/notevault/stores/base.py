"""Defines the API that every storage backend implements.

The most important class is :class:`Store`. The errors it raises are defined in :mod:`notevault.errors` and
re-exported here.
"""

import copy
from dataclasses import replace
import functools
import logging
import threading
from typing import List, Optional, Set, Iterable

from notevault import events
from notevault.errors import StoreError, DuplicateNameError, DuplicateIdError, ProtectedEntityError,\
    UnknownReferenceError, InvalidSnapshotError
from notevault.models import Note, Category, Tag, NoteQuery, NotePriority, Statistics, utcnow, note_sort_key,\
    predefined_categories, predefined_tags
from notevault.records import make_snapshot, parse_snapshot


__all__ = ['Store', 'synchronized', 'StoreError', 'DuplicateNameError', 'DuplicateIdError', 'ProtectedEntityError',
           'UnknownReferenceError', 'InvalidSnapshotError']

logger = logging.getLogger(__name__)


def synchronized(method):
    """Runs the method while holding the store's lock, so calls on one instance never interleave."""
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        with self._lock:
            return method(self, *args, **kwargs)
    return wrapper


class Store:
    """Base class for stores, which persist notes, categories, and tags and keep them consistent with each other.

    Rules every implementation follows:

    * Every note belongs to an existing category, and every tag id on a note refers to an existing tag.
      Deleting a category moves its notes to the default category; deleting a tag removes it from all notes.
    * The default category always exists and cannot be deleted.
    * Category and tag names are unique, ignoring case.
    * :attr:`notevault.models.Category.note_count` and :attr:`notevault.models.Tag.usage_count` are always computed
      from the notes at read time; values passed in are ignored.
    * Looking up a missing id returns None rather than raising an error.

    Instances can be shared between threads; an internal lock serializes all calls.
    Call :meth:`close` when done with the instance, or use it as a context manager.

    .. attribute:: conf
       :type: notevault.conf.StoreConf
    """

    storage_type = None
    """Short name identifying the backend, reported in statistics and exports."""

    def __init__(self, conf):
        self.conf = conf
        self.default_category_id = conf.default_category_id
        self.events = conf.event_recorder
        self._lock = threading.RLock()

    # Notes

    def create_note(self, note: Note) -> str:
        """Saves a new note and returns its id.

        If the note has no category, it is put in the default category.
        Raises :exc:`DuplicateIdError` if the id is taken, or :exc:`UnknownReferenceError` if the category or
        any tag does not exist.
        """
        raise NotImplementedError()

    def update_note(self, note: Note) -> None:
        """Replaces the stored note having the same id, setting its ``updated_at`` to the current time.

        Does nothing if there is no such note. Raises :exc:`UnknownReferenceError` like :meth:`create_note`.
        """
        raise NotImplementedError()

    def delete_note(self, note_id: str) -> None:
        """Removes the note. Does nothing if there is no such note."""
        raise NotImplementedError()

    def get_note(self, note_id: str) -> Optional[Note]:
        raise NotImplementedError()

    def get_all_notes(self) -> List[Note]:
        """Returns every note, most recently updated first."""
        raise NotImplementedError()

    def query_notes(self, query: NoteQuery) -> List[Note]:
        """Returns the notes matching all the criteria in the query, most recently updated first."""
        raise NotImplementedError()

    def search_notes(self, text: str) -> List[Note]:
        """Returns notes whose title or content contains the text, ignoring case, most recently updated first.

        Leading and trailing whitespace in the text is ignored, and blank text matches nothing.
        """
        raise NotImplementedError()

    def create_notes_batch(self, notes: List[Note]) -> None:
        """Saves several new notes. Validation happens for all of them before any is saved."""
        raise NotImplementedError()

    def update_notes_batch(self, notes: List[Note]) -> None:
        """Updates several notes, as :meth:`update_note` would. Validation happens before anything is saved."""
        raise NotImplementedError()

    def get_filtered_notes(self, query: NoteQuery = None, *, category_id: str = None, tag_ids: Iterable[str] = None,
                           is_favorite: bool = None, is_archived: bool = None,
                           priority: NotePriority = None) -> List[Note]:
        """Convenience method that combines the keyword filters with ``query`` and calls :meth:`query_notes`."""
        query = copy.deepcopy(NoteQuery.parse(query)) if query else NoteQuery()
        if category_id is not None:
            query.category_ids.add(category_id)
        if tag_ids:
            query.tag_ids.update(tag_ids)
        if is_favorite is not None:
            query.is_favorite = is_favorite
        if is_archived is not None:
            query.is_archived = is_archived
        if priority is not None:
            query.priorities.add(NotePriority(priority))
        return self.query_notes(query)

    # Categories

    def create_category(self, category: Category) -> str:
        """Saves a new category and returns its id.

        Raises :exc:`DuplicateNameError` if another category has the same name ignoring case, or
        :exc:`DuplicateIdError` if the id is taken.
        """
        raise NotImplementedError()

    def update_category(self, category: Category) -> None:
        """Replaces the stored category with the same id. Does nothing if there is no such category.

        Raises :exc:`DuplicateNameError` if the new name belongs to a different category.
        """
        raise NotImplementedError()

    def delete_category(self, category_id: str) -> None:
        """Moves the category's notes to the default category, then removes the category.

        Raises :exc:`ProtectedEntityError` for the default category.
        """
        raise NotImplementedError()

    def get_category(self, category_id: str) -> Optional[Category]:
        raise NotImplementedError()

    def get_all_categories(self) -> List[Category]:
        """Returns all categories with current note counts, ordered by ``order_index`` and then name."""
        raise NotImplementedError()

    # Tags

    def create_tag(self, tag: Tag) -> str:
        """Saves a new tag and returns its id. Raises errors like :meth:`create_category`."""
        raise NotImplementedError()

    def update_tag(self, tag: Tag) -> None:
        raise NotImplementedError()

    def delete_tag(self, tag_id: str) -> None:
        """Removes the tag from every note that has it, then removes the tag."""
        raise NotImplementedError()

    def get_tag(self, tag_id: str) -> Optional[Tag]:
        raise NotImplementedError()

    def get_all_tags(self) -> List[Tag]:
        """Returns all tags with current usage counts, most used first, then by name."""
        raise NotImplementedError()

    # Utility

    def statistics(self) -> Statistics:
        """Computes a summary of the current data. Overdue reminders are judged against the current time."""
        raise NotImplementedError()

    def _clear(self) -> None:
        """Removes every note, category, and tag, without recreating the default category."""
        raise NotImplementedError()

    def _category_exists(self, category_id: str) -> bool:
        raise NotImplementedError()

    def _tag_ids_existing(self, tag_ids: Set[str]) -> Set[str]:
        """Returns the subset of the given ids that belong to existing tags."""
        raise NotImplementedError()

    def _category_ids_named(self, name: str) -> Set[str]:
        """Returns the ids of categories whose name equals the given one, ignoring case."""
        raise NotImplementedError()

    def _tag_ids_named(self, name: str) -> Set[str]:
        raise NotImplementedError()

    @synchronized
    def clear_all_data(self) -> None:
        """Removes all notes, categories, and tags, then recreates the default category (and predefined data,
        if configured)."""
        self._clear()
        self._seed()
        self._record(events.DATA_CLEARED, {})

    @synchronized
    def export_data(self) -> dict:
        """Returns a snapshot of all data that can be serialized as JSON and later passed to :meth:`import_data`."""
        return make_snapshot(self.get_all_notes(), self.get_all_categories(), self.get_all_tags(),
                             self.storage_type)

    @synchronized
    def import_data(self, data: dict) -> None:
        """Replaces all data with the contents of a snapshot produced by :meth:`export_data`.

        The snapshot is validated first; if it is unusable, :exc:`InvalidSnapshotError` is raised and nothing is
        changed. Then all data is cleared and categories, tags, and notes are created, in that order.
        """
        snapshot = parse_snapshot(data, self.default_category_id)
        self._clear()
        if not any(c.id == self.default_category_id for c in snapshot.categories):
            self.create_category(Category.default(self.default_category_id))
        for category in snapshot.categories:
            self.create_category(category)
        for tag in snapshot.tags:
            self.create_tag(tag)
        self.create_notes_batch(snapshot.notes)
        self._record(events.DATA_IMPORTED, {
            'notes': len(snapshot.notes),
            'categories': len(snapshot.categories),
            'tags': len(snapshot.tags),
        })

    def close(self) -> None:
        """Release any resources associated with the store."""
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    # Helpers shared by implementations

    def _record(self, event: str, properties: dict) -> None:
        self.events.record(event, properties)

    def _seed(self) -> None:
        """Creates the default category if it is missing, and predefined categories/tags if configured."""
        if not self._category_exists(self.default_category_id):
            logger.debug('Creating default category %s', self.default_category_id)
            self.create_category(Category.default(self.default_category_id))
        if self.conf.seed_predefined:
            for category in predefined_categories():
                if not (self._category_exists(category.id) or self._category_ids_named(category.name)):
                    self.create_category(category)
            for tag in predefined_tags():
                if not (self._tag_ids_existing({tag.id}) or self._tag_ids_named(tag.name)):
                    self.create_tag(tag)

    def _checked_note(self, note: Note) -> Note:
        """Returns the note with its category defaulted, after checking that everything it refers to exists."""
        if note.category_id is None:
            note = replace(note, category_id=self.default_category_id)
        if not self._category_exists(note.category_id):
            raise UnknownReferenceError(note.id, 'category', {note.category_id})
        missing = note.tag_ids - self._tag_ids_existing(note.tag_ids)
        if missing:
            raise UnknownReferenceError(note.id, 'tags', missing)
        return note

    def _checked_update(self, note: Note) -> Note:
        note = self._checked_note(note)
        return replace(note, updated_at=max(utcnow(), note.created_at))

    def _check_category_name(self, category: Category) -> None:
        if self._category_ids_named(category.name) - {category.id}:
            raise DuplicateNameError('category', category.name)

    def _check_tag_name(self, tag: Tag) -> None:
        if self._tag_ids_named(tag.name) - {tag.id}:
            raise DuplicateNameError('tag', tag.name)

    @staticmethod
    def _sorted_notes(notes: Iterable[Note]) -> List[Note]:
        return sorted(notes, key=note_sort_key, reverse=True)

    @staticmethod
    def _sorted_categories(categories: Iterable[Category]) -> List[Category]:
        return sorted(categories, key=lambda c: (c.order_index, c.name.lower(), c.id))

    @staticmethod
    def _sorted_tags(tags: Iterable[Tag]) -> List[Tag]:
        return sorted(tags, key=lambda t: (-t.usage_count, t.name.lower(), t.id))
