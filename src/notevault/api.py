"""Provides the main entry point for using the library, :class:`Notevault`"""

from __future__ import annotations
from dataclasses import replace
import json
import logging
from typing import Iterable, Optional, Set, Callable

from notevault.conf import NotevaultConf
from notevault.models import Note, Category, Tag
from notevault.stores.base import InvalidSnapshotError


logger = logging.getLogger(__name__)

_DELEGATED = frozenset([
    'create_note', 'update_note', 'delete_note', 'get_note', 'get_all_notes', 'get_filtered_notes', 'query_notes',
    'search_notes', 'create_notes_batch', 'update_notes_batch',
    'create_category', 'update_category', 'delete_category', 'get_category', 'get_all_categories',
    'create_tag', 'update_tag', 'delete_tag', 'get_tag', 'get_all_tags',
    'clear_all_data', 'statistics', 'export_data', 'import_data',
])


class Notevault:
    """Main entry point for working programmatically with your notes.

    Generally, you should get an instance using the :meth:`Notevault.for_user` method. Call :meth:`close` when you're
    done with it, or else use it as a context manager.

    All the operations of :class:`notevault.stores.base.Store` (such as :meth:`get_all_notes` or
    :meth:`delete_category`) can be called directly on this class and are passed to :attr:`store`. This class adds
    higher-level helpers such as :meth:`new_note` and :meth:`add_tag`.

    .. attribute:: conf
       :type: notevault.conf.NotevaultConf

       Typically loaded from the variable ``conf`` in the file ``~/.notevault.conf.py``

    .. attribute:: store
       :type: notevault.stores.base.Store

    Here's an example of how to use this class. This would mark every note tagged "journal" as a favorite.

    .. code-block:: python

       from notevault.api import Notevault
       with Notevault.for_user() as nv:
           for note in nv.get_filtered_notes('tag:journal'):
               nv.set_favorite(note.id, True)
    """

    @staticmethod
    def for_user() -> Notevault:
        """Creates an instance using the user's ``~/.notevault.conf.py`` file.

        Raises :exc:`Exception` if it does not exist or does not define configuration.
        """
        return NotevaultConf.for_user().instantiate()

    def __init__(self, conf: NotevaultConf):
        self.conf = conf
        self.store = conf.store_conf.instantiate()

    def __getattr__(self, name):
        if name in _DELEGATED:
            return getattr(self.store, name)
        raise AttributeError(f'{type(self).__name__!r} object has no attribute {name!r}')

    def find_category(self, name: str) -> Optional[Category]:
        """Returns the category with the given name, ignoring case, or None."""
        folded = name.lower()
        return next((c for c in self.store.get_all_categories() if c.name.lower() == folded), None)

    def find_tag(self, name: str) -> Optional[Tag]:
        """Returns the tag with the given name, ignoring case, or None."""
        folded = name.lower()
        return next((t for t in self.store.get_all_tags() if t.name.lower() == folded), None)

    def new_category(self, name: str, **kwargs) -> Category:
        """Creates a category with a generated id. Keyword arguments are passed to :class:`Category`."""
        category = Category.create(name, **kwargs)
        self.store.create_category(category)
        return self.store.get_category(category.id)

    def new_tag(self, name: str, **kwargs) -> Tag:
        """Creates a tag with a generated id. Keyword arguments are passed to :class:`Tag`."""
        tag = Tag.create(name, **kwargs)
        self.store.create_tag(tag)
        return self.store.get_tag(tag.id)

    def ensure_tags(self, names: Iterable[str]) -> Set[str]:
        """Returns the ids of the tags with the given names, creating any that do not exist yet."""
        ids = set()
        for name in names:
            tag = self.find_tag(name) or self.new_tag(name)
            ids.add(tag.id)
        return ids

    def new_note(self, title: str, content: str = '', *, tag_names: Iterable[str] = (), **kwargs) -> Note:
        """Creates a note with a generated id and the current time.

        Tags named in ``tag_names`` are created if needed. Other keyword arguments are passed to :class:`Note`.
        """
        tag_ids = set(kwargs.pop('tag_ids', set())) | self.ensure_tags(tag_names)
        note = Note.create(title, content, tag_ids=tag_ids, **kwargs)
        self.store.create_note(note)
        return self.store.get_note(note.id)

    def _change_note(self, note_id: str, fn: Callable[[Note], Note]) -> Optional[Note]:
        note = self.store.get_note(note_id)
        if not note:
            logger.warning('Note not found: %s', note_id)
            return None
        changed = fn(note)
        if changed is not note:
            self.store.update_note(changed)
        return self.store.get_note(note_id)

    def set_favorite(self, note_id: str, favorite: bool = True) -> Optional[Note]:
        """Updates the note and returns the stored result, or None if the note does not exist."""
        return self._change_note(note_id, lambda n: n.with_favorite(favorite))

    def set_archived(self, note_id: str, archived: bool = True) -> Optional[Note]:
        return self._change_note(note_id, lambda n: n.with_archived(archived))

    def add_tag(self, note_id: str, tag_id: str) -> Optional[Note]:
        return self._change_note(note_id, lambda n: n.with_tag(tag_id))

    def remove_tag(self, note_id: str, tag_id: str) -> Optional[Note]:
        return self._change_note(note_id, lambda n: n.without_tag(tag_id))

    def move_to_category(self, note_id: str, category_id: str) -> Optional[Note]:
        return self._change_note(note_id, lambda n: replace(n, category_id=category_id).touched())

    def mark_synced(self, note_id: str) -> Optional[Note]:
        return self._change_note(note_id, lambda n: n.marked_synced())

    def export_to(self, path: str) -> dict:
        """Writes a snapshot of all data to a JSON file and returns it."""
        snapshot = self.store.export_data()
        with open(path, 'w') as file:
            json.dump(snapshot, file, indent=self.conf.export_indent)
        logger.info('Exported %d notes to %s', len(snapshot['notes']), path)
        return snapshot

    def import_from(self, path: str) -> None:
        """Replaces all data with the snapshot in a JSON file written by :meth:`export_to`."""
        with open(path, 'r') as file:
            try:
                data = json.load(file)
            except json.JSONDecodeError as e:
                raise InvalidSnapshotError(f'Not valid JSON: {path}') from e
        self.store.import_data(data)

    def close(self):
        """Release any resources associated with the instance."""
        self.store.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
