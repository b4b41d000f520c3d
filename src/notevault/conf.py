from __future__ import annotations
from dataclasses import dataclass, field, replace
import os.path
from notevault.events import EventRecorder
from notevault.models import DEFAULT_CATEGORY_ID


@dataclass
class StoreConf:
    """Base class for store config. Use a subclass such as :class:`SqliteStoreConf`."""

    default_category_id: str = DEFAULT_CATEGORY_ID
    """Id of the category that always exists, receives notes saved without a category, and receives the notes of
    deleted categories."""

    seed_predefined: bool = False
    """If True, a starter set of categories (Personal, Work, Ideas, ...) and tags (important, todo, ...) is created
    whenever the store is opened or cleared. Existing entries with the same id or name are left alone."""

    event_recorder: EventRecorder = field(default_factory=EventRecorder)
    """Receives an analytics event for each change and search.

    The default discards them; see :mod:`notevault.events` for alternatives.
    """

    def instantiate(self):
        raise NotImplementedError("Please use a subclass like SqliteStoreConf instead!")

    def standardize(self):
        return self


@dataclass
class EmbeddedStoreConf(StoreConf):
    """Configures notevault to keep data in YAML box files, via :class:`notevault.stores.embedded.EmbeddedStore`."""

    directory: str = None
    """Folder in which the box files are kept. It will be created if it does not exist.

    If None, data is only kept in memory.
    """

    journal_path: str = None
    """Optional path of a journal file used to finish interrupted multi-record changes when the store is reopened."""

    def instantiate(self):
        from notevault.stores.embedded import EmbeddedStore
        return EmbeddedStore(self.standardize())

    def standardize(self):
        return replace(
            self,
            directory=self.directory and os.path.abspath(os.path.expanduser(self.directory)),
            journal_path=self.journal_path and os.path.abspath(os.path.expanduser(self.journal_path))
        )


@dataclass
class SqliteStoreConf(StoreConf):
    """Configures notevault to keep data in a SQLite database, via :class:`notevault.stores.sqlite.SqliteStore`."""

    database_path: str = ':memory:'
    """Path where the SQLite database file should be stored. The file will be created if it does not exist.

    The default keeps the database in memory.
    """

    def instantiate(self):
        from notevault.stores.sqlite import SqliteStore
        return SqliteStore(self.standardize())

    def standardize(self):
        if self.database_path == ':memory:':
            return self
        return replace(self, database_path=os.path.abspath(os.path.expanduser(self.database_path)))


@dataclass
class NotevaultConf:
    store_conf: StoreConf
    """Configures where and how your notes are stored."""

    export_indent: int = 2
    """Indentation used when writing exported snapshots as JSON. Use None for the most compact output."""

    @classmethod
    def for_user(cls) -> NotevaultConf:
        path = os.path.expanduser(os.path.join('~', '.notevault.conf.py'))
        if not os.path.exists(path):
            raise Exception(f'You need to create the config file: {path}')
        with open(path, 'r') as file:
            conf_script = file.read()
        context = {}
        exec(conf_script, context)
        if 'conf' not in context or not isinstance(context['conf'], cls):
            raise Exception('You need to assign an instance of NotevaultConf to the variable `conf` '
                            f'in your config file: {path}')
        return context['conf']

    def standardize(self):
        return replace(
            self,
            store_conf=self.store_conf.standardize()
        )

    def instantiate(self):
        from notevault.api import Notevault
        return Notevault(self.standardize())
