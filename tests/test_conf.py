from pathlib import Path

import pytest

from notevault.conf import NotevaultConf, StoreConf, EmbeddedStoreConf, SqliteStoreConf
from notevault.events import EventRecorder
from notevault.stores.embedded import EmbeddedStore
from notevault.stores.sqlite import SqliteStore


def test_for_user(fs):
    Path('~').expanduser().mkdir(parents=True)
    Path('~/.notevault.conf.py').expanduser().write_text("""
from notevault.conf import *
conf = NotevaultConf(
    store_conf=EmbeddedStoreConf(directory='~/notes', default_category_id='inbox'),
    export_indent=None
)
""")
    conf = NotevaultConf.for_user()
    assert conf.export_indent is None
    assert conf.store_conf.default_category_id == 'inbox'
    assert conf.standardize().store_conf.directory == str(Path('~/notes').expanduser())


def test_for_user_missing_file(fs):
    with pytest.raises(Exception, match='create the config file'):
        NotevaultConf.for_user()


def test_for_user_without_conf(fs):
    Path('~').expanduser().mkdir(parents=True)
    Path('~/.notevault.conf.py').expanduser().write_text('x = 1\n')
    with pytest.raises(Exception, match='assign an instance of NotevaultConf'):
        NotevaultConf.for_user()


def test_defaults():
    conf = SqliteStoreConf()
    assert conf.database_path == ':memory:'
    assert conf.default_category_id == 'default'
    assert not conf.seed_predefined
    assert type(conf.event_recorder) is EventRecorder
    assert conf.standardize() is conf
    standardized = EmbeddedStoreConf().standardize()
    assert standardized.directory is None
    assert standardized.journal_path is None


def test_instantiate():
    with SqliteStoreConf().instantiate() as store:
        assert isinstance(store, SqliteStore)
    with EmbeddedStoreConf().instantiate() as store:
        assert isinstance(store, EmbeddedStore)
    with pytest.raises(NotImplementedError):
        StoreConf().instantiate()
