from dataclasses import replace
from datetime import datetime, timezone
import json
import random
import threading

from freezegun import freeze_time
import pytest

from notevault.conf import EmbeddedStoreConf, SqliteStoreConf
from notevault.events import MemoryEventRecorder
from notevault.models import Note, Category, Tag, NoteQuery, NotePriority, Statistics
from notevault.records import note_to_record
from notevault.stores.base import DuplicateNameError, DuplicateIdError, ProtectedEntityError, UnknownReferenceError,\
    InvalidSnapshotError

UTC = timezone.utc


def at(day: int, hour: int = 0) -> datetime:
    return datetime(2020, 1, day, hour, tzinfo=UTC)


def note(note_id: str, **kwargs) -> Note:
    kwargs.setdefault('title', f'Note {note_id}')
    kwargs.setdefault('created_at', at(1))
    return Note(id=note_id, **kwargs)


def ids(entities) -> list:
    return [e.id for e in entities]


def seed(store):
    store.create_category(Category('work', 'Work', created_at=at(1)))
    store.create_tag(Tag('a', 'alpha', created_at=at(1)))
    store.create_tag(Tag('b', 'beta', created_at=at(1)))
    store.create_note(note('n1', content='one two three', category_id='work', tag_ids={'a', 'b'}, is_favorite=True,
                           priority=NotePriority.HIGH, remind_at=at(5), updated_at=at(4)))
    store.create_note(note('n2', content='four', category_id='work', tag_ids={'a'}, is_archived=True,
                           priority=NotePriority.URGENT, updated_at=at(3)))
    store.create_note(note('n3', tag_ids={'b'}, remind_at=datetime(2030, 1, 1, tzinfo=UTC), updated_at=at(2)))
    store.create_note(note('n4', content='five  six', priority=NotePriority.LOW))


def test_default_category_is_seeded(store):
    default = store.get_category('default')
    assert default.name == 'General'
    assert default.note_count == 0
    assert ids(store.get_all_categories()) == ['default']


def test_lookup_missing_returns_none(store):
    assert store.get_note('nope') is None
    assert store.get_category('nope') is None
    assert store.get_tag('nope') is None


def test_create_and_get_note(store):
    store.create_tag(Tag('a', 'alpha'))
    original = note('n1', content='Hello', tag_ids={'a'}, color='#000000', priority=NotePriority.URGENT,
                    remind_at=datetime(2020, 2, 3, 4, 5, 6, 789, tzinfo=UTC), encrypted=True)
    assert store.create_note(original) == 'n1'
    assert store.get_note('n1') == replace(original, category_id='default')


def test_create_note_rejects_duplicate_id(store):
    store.create_note(note('n1'))
    with pytest.raises(DuplicateIdError):
        store.create_note(note('n1', title='Other'))
    assert store.get_note('n1').title == 'Note n1'


def test_create_note_rejects_unknown_references(store):
    with pytest.raises(UnknownReferenceError) as excinfo:
        store.create_note(note('n1', category_id='missing'))
    assert excinfo.value.missing_ids == {'missing'}
    with pytest.raises(UnknownReferenceError) as excinfo:
        store.create_note(note('n1', tag_ids={'t1', 't2'}))
    assert excinfo.value.missing_ids == {'t1', 't2'}
    assert store.get_all_notes() == []


def test_counters_are_computed_from_notes(store):
    seed(store)
    assert [(c.id, c.note_count) for c in store.get_all_categories()] == [('default', 2), ('work', 2)]
    assert store.get_category('work').note_count == 2
    assert [(t.id, t.usage_count) for t in store.get_all_tags()] == [('a', 2), ('b', 2)]
    assert store.get_tag('b').usage_count == 2


def test_counters_passed_in_are_ignored(store):
    store.create_category(Category('work', 'Work', note_count=50))
    store.create_tag(Tag('a', 'alpha', usage_count=99))
    store.update_tag(Tag('a', 'alpha', usage_count=7))
    assert store.get_category('work').note_count == 0
    assert store.get_tag('a').usage_count == 0


def check_counters(store):
    notes = store.get_all_notes()
    for category in store.get_all_categories():
        expected = sum(1 for n in notes if n.category_id == category.id)
        assert category.note_count == expected
        assert store.get_category(category.id).note_count == expected
    for tag in store.get_all_tags():
        expected = sum(1 for n in notes if tag.id in n.tag_ids)
        assert tag.usage_count == expected
        assert store.get_tag(tag.id).usage_count == expected


@pytest.mark.parametrize('seed_value', range(5))
def test_counters_survive_random_changes(store, seed_value):
    rng = random.Random(seed_value)
    serial = iter(range(1000))
    for _ in range(60):
        categories = [c.id for c in store.get_all_categories()]
        tags = [t.id for t in store.get_all_tags()]
        notes = store.get_all_notes()
        action = rng.choice(['create_note', 'create_note', 'update_note', 'delete_note',
                             'create_category', 'delete_category', 'create_tag', 'delete_tag'])
        if action == 'create_note':
            store.create_note(note(f'n{next(serial)}', category_id=rng.choice(categories),
                                   tag_ids=set(rng.sample(tags, rng.randint(0, len(tags))))))
        elif action == 'update_note' and notes:
            store.update_note(replace(rng.choice(notes), category_id=rng.choice(categories),
                                      tag_ids=set(rng.sample(tags, rng.randint(0, len(tags))))))
        elif action == 'delete_note' and notes:
            store.delete_note(rng.choice(notes).id)
        elif action == 'create_category':
            number = next(serial)
            store.create_category(Category(f'c{number}', f'Category {number}'))
        elif action == 'delete_category' and len(categories) > 1:
            store.delete_category(rng.choice([c for c in categories if c != 'default']))
        elif action == 'create_tag':
            number = next(serial)
            store.create_tag(Tag(f't{number}', f'tag {number}'))
        elif action == 'delete_tag' and tags:
            store.delete_tag(rng.choice(tags))
        check_counters(store)


@freeze_time('2021-06-01 12:00:00')
def test_update_note(store):
    seed(store)
    n1 = store.get_note('n1')
    store.update_note(replace(n1, title='Renamed', category_id=None, tag_ids={'b'}))
    updated = store.get_note('n1')
    assert updated.title == 'Renamed'
    assert updated.category_id == 'default'
    assert updated.tag_ids == {'b'}
    assert updated.created_at == at(1)
    assert updated.updated_at == datetime(2021, 6, 1, 12, tzinfo=UTC)
    assert store.get_tag('a').usage_count == 1
    assert store.get_tag('b').usage_count == 2
    assert store.get_category('work').note_count == 1
    assert ids(store.get_all_notes()) == ['n1', 'n2', 'n3', 'n4']


def test_update_note_rejects_unknown_tag(store):
    store.create_note(note('n1'))
    with pytest.raises(UnknownReferenceError):
        store.update_note(note('n1', tag_ids={'missing'}))
    assert store.get_note('n1').tag_ids == set()


def test_update_missing_entities_does_nothing(store):
    store.update_note(note('ghost'))
    store.update_category(Category('ghost', 'Ghost'))
    store.update_tag(Tag('ghost', 'Ghost'))
    assert store.get_note('ghost') is None
    assert store.get_category('ghost') is None
    assert store.get_tag('ghost') is None


def test_delete_note(store):
    seed(store)
    store.delete_note('n1')
    store.delete_note('n1')
    assert store.get_note('n1') is None
    assert [(t.id, t.usage_count) for t in store.get_all_tags()] == [('a', 1), ('b', 1)]
    assert store.get_category('work').note_count == 1


def test_delete_category_moves_notes_to_default(store):
    seed(store)
    store.delete_category('work')
    assert store.get_category('work') is None
    assert store.get_category('default').note_count == 4
    n1 = store.get_note('n1')
    assert n1.category_id == 'default'
    assert n1.updated_at == at(4)
    store.delete_category('work')


def test_default_category_is_protected(store):
    with pytest.raises(ProtectedEntityError):
        store.delete_category('default')
    assert store.get_category('default') is not None


def test_delete_tag_removes_it_from_notes(store):
    seed(store)
    store.delete_tag('a')
    assert store.get_tag('a') is None
    assert store.get_note('n1').tag_ids == {'b'}
    assert store.get_note('n1').updated_at == at(4)
    assert store.get_note('n2').tag_ids == set()
    assert ids(store.get_filtered_notes(tag_ids=['b'])) == ['n1', 'n3']


def test_names_are_unique_ignoring_case(store):
    store.create_category(Category('work', 'Work'))
    with pytest.raises(DuplicateNameError):
        store.create_category(Category('work2', 'WORK'))
    with pytest.raises(DuplicateNameError):
        store.create_category(Category('general', 'general'))
    store.create_tag(Tag('a', 'Alpha'))
    with pytest.raises(DuplicateNameError):
        store.create_tag(Tag('b', 'alpha'))
    store.create_category(Category('eco', 'Ökonomie'))
    with pytest.raises(DuplicateNameError):
        store.create_category(Category('eco2', 'ÖKONOMIE'))
    store.create_tag(Tag('e', 'Élan'))
    with pytest.raises(DuplicateNameError):
        store.create_tag(Tag('e2', 'élan'))
    assert set(ids(store.get_all_categories())) == {'default', 'work', 'eco'}
    assert set(ids(store.get_all_tags())) == {'a', 'e'}


def test_duplicate_ids_are_rejected(store):
    store.create_tag(Tag('a', 'alpha'))
    with pytest.raises(DuplicateIdError):
        store.create_tag(Tag('a', 'other'))
    with pytest.raises(DuplicateIdError):
        store.create_category(Category('default', 'Other'))


def test_rename(store):
    store.create_category(Category('work', 'Work'))
    store.create_category(Category('home', 'Home'))
    store.update_category(Category('work', 'WORK', description='Office'))
    assert store.get_category('work').name == 'WORK'
    assert store.get_category('work').description == 'Office'
    with pytest.raises(DuplicateNameError):
        store.update_category(Category('work', 'home'))
    store.create_tag(Tag('a', 'alpha'))
    store.create_tag(Tag('b', 'beta'))
    with pytest.raises(DuplicateNameError):
        store.update_tag(Tag('a', 'Beta'))
    store.update_tag(Tag('a', 'gamma', color='#000000'))
    assert store.get_tag('a').name == 'gamma'
    assert store.get_tag('a').color == '#000000'


def test_listing_order(store):
    store.create_category(Category('z', 'Zebra', order_index=1))
    store.create_category(Category('b', 'banana', order_index=2))
    store.create_category(Category('a', 'Apple', order_index=2))
    assert ids(store.get_all_categories()) == ['default', 'z', 'a', 'b']

    store.create_tag(Tag('t1', 'beta'))
    store.create_tag(Tag('t2', 'Alpha'))
    store.create_tag(Tag('t3', 'gamma'))
    store.create_note(note('n1', tag_ids={'t3'}, updated_at=at(2)))
    store.create_note(note('n2', updated_at=at(3)))
    store.create_note(note('n3', updated_at=at(2)))
    assert ids(store.get_all_tags()) == ['t3', 't2', 't1']
    assert ids(store.get_all_notes()) == ['n2', 'n3', 'n1']


def test_search(store):
    store.create_note(note('n1', title='Budget', content='100% sure'))
    store.create_note(note('n2', title='snake_case', content='x'))
    store.create_note(note('n3', title='Plain', content='1000 sure things'))
    store.create_note(note('n4', title='Paths', content='C:\\temp'))
    store.create_note(note('n5', title='Dessert', content='Crème Brûlée'))
    assert ids(store.search_notes('  BUDGET ')) == ['n1']
    assert ids(store.search_notes('sure')) == ['n3', 'n1']
    assert ids(store.search_notes('%')) == ['n1']
    assert ids(store.search_notes('_')) == ['n2']
    assert ids(store.search_notes('\\')) == ['n4']
    assert ids(store.search_notes('Case')) == ['n2']
    assert ids(store.search_notes('CRÈME')) == ['n5']
    assert ids(store.search_notes('brûlée')) == ['n5']
    assert store.search_notes('') == []
    assert store.search_notes('   ') == []
    assert store.search_notes('nothing like this') == []


@freeze_time('2025-01-01')
def test_filtering(store):
    seed(store)
    assert ids(store.get_filtered_notes()) == ['n1', 'n2', 'n3', 'n4']
    assert ids(store.get_filtered_notes(category_id='work')) == ['n1', 'n2']
    assert ids(store.get_filtered_notes(category_id='default')) == ['n3', 'n4']
    assert ids(store.get_filtered_notes(tag_ids=['a'])) == ['n1', 'n2']
    assert ids(store.get_filtered_notes(tag_ids=['a', 'b'])) == ['n1']
    assert ids(store.get_filtered_notes(is_favorite=True)) == ['n1']
    assert ids(store.get_filtered_notes(is_archived=False)) == ['n1', 'n3', 'n4']
    assert ids(store.get_filtered_notes(priority=NotePriority.URGENT)) == ['n2']
    assert ids(store.get_filtered_notes(priority='normal')) == ['n3']
    assert ids(store.get_filtered_notes(category_id='work', is_archived=False)) == ['n1']
    assert store.get_filtered_notes(category_id='work', priority=NotePriority.LOW) == []
    assert ids(store.query_notes(NoteQuery(has_reminder=True))) == ['n1', 'n3']
    assert ids(store.query_notes(NoteQuery(has_reminder=False))) == ['n2', 'n4']
    assert ids(store.query_notes(NoteQuery(is_overdue=True))) == ['n1']
    assert ids(store.query_notes(NoteQuery(updated_after=at(3)))) == ['n1', 'n2']
    assert ids(store.query_notes(NoteQuery(updated_before=at(2)))) == ['n3', 'n4']
    assert ids(store.query_notes(NoteQuery(created_after=at(2)))) == []
    assert ids(store.get_filtered_notes('priority:high,urgent -archived')) == ['n1']
    assert ids(store.get_filtered_notes('tag:b', category_id='default')) == ['n3']


def test_filtering_does_not_modify_query(store):
    query = NoteQuery(tag_ids={'a'})
    store.get_filtered_notes(query, category_id='work', tag_ids=['b'])
    assert query == NoteQuery(tag_ids={'a'})


@freeze_time('2025-01-01')
def test_statistics(store):
    assert store.statistics() == Statistics(total_categories=1, storage_type=store.storage_type)
    seed(store)
    assert store.statistics() == Statistics(
        total_notes=4,
        favorite_notes=1,
        archived_notes=1,
        notes_with_reminders=2,
        overdue_notes=1,
        total_categories=2,
        total_tags=2,
        average_note_length=6.5,
        total_words=6,
        storage_type=store.storage_type)


def test_batches(store):
    store.create_tag(Tag('a', 'alpha'))
    store.create_notes_batch([note('n1', tag_ids={'a'}), note('n2', tag_ids={'a'})])
    assert store.get_tag('a').usage_count == 2

    with pytest.raises(UnknownReferenceError):
        store.create_notes_batch([note('n3'), note('n4', tag_ids={'missing'})])
    with pytest.raises(DuplicateIdError):
        store.create_notes_batch([note('n5'), note('n5')])
    assert ids(store.get_all_notes()) == ['n2', 'n1']

    with freeze_time('2021-01-01'):
        store.update_notes_batch([note('n1', title='One'), note('n2', title='Two', tag_ids={'a'}), note('ghost')])
    assert store.get_note('n1').title == 'One'
    assert store.get_note('n1').updated_at == datetime(2021, 1, 1, tzinfo=UTC)
    assert store.get_note('n2').title == 'Two'
    assert store.get_note('ghost') is None
    assert store.get_tag('a').usage_count == 1


def test_clear_all_data(store):
    seed(store)
    store.clear_all_data()
    assert store.get_all_notes() == []
    assert store.get_all_tags() == []
    assert ids(store.get_all_categories()) == ['default']


def test_export_and_import_into_either_backend(store):
    seed(store)
    snapshot = json.loads(json.dumps(store.export_data()))
    assert snapshot['export_version'] == '1.0'
    assert snapshot['storage_type'] == store.storage_type
    assert [n['id'] for n in snapshot['notes']] == ['n1', 'n2', 'n3', 'n4']

    for conf in (EmbeddedStoreConf(), SqliteStoreConf()):
        with conf.instantiate() as other:
            other.create_category(Category('stale', 'Stale'))
            other.create_note(note('stale', category_id='stale'))
            other.import_data(snapshot)
            assert other.get_all_notes() == store.get_all_notes()
            assert other.get_all_categories() == store.get_all_categories()
            assert other.get_all_tags() == store.get_all_tags()


def test_import_without_default_category(store):
    record = note_to_record(note('n1'))
    store.import_data({'notes': [record], 'categories': [], 'tags': []})
    assert store.get_note('n1').category_id == 'default'
    assert store.get_category('default').note_count == 1


def test_invalid_import_changes_nothing(store):
    store.create_note(note('keep'))
    bad_reference = {'notes': [{'id': 'x', 'title': 't', 'created_at': '2020-01-01T00:00:00',
                                'category_id': 'nope'}]}
    with pytest.raises(InvalidSnapshotError):
        store.import_data(bad_reference)
    with pytest.raises(InvalidSnapshotError):
        store.import_data({'notes': [{'title': 'no id'}]})
    with pytest.raises(InvalidSnapshotError):
        store.import_data({'notes': 'not a list'})
    with pytest.raises(InvalidSnapshotError):
        store.import_data({'tags': [{'id': 'a', 'name': 'x', 'created_at': '2020-01-01T00:00:00'},
                                    {'id': 'b', 'name': 'X', 'created_at': '2020-01-01T00:00:00'}]})
    assert ids(store.get_all_notes()) == ['keep']


def test_events(make_store):
    recorder = MemoryEventRecorder()
    store = make_store(event_recorder=recorder)
    assert recorder.names() == ['category_created']
    recorder.events.clear()
    store.create_tag(Tag('a', 'alpha'))
    store.create_note(note('n1', tag_ids={'a'}))
    store.update_note(note('n1', title='Changed'))
    store.search_notes('changed')
    store.delete_tag('a')
    store.delete_note('n1')
    store.delete_note('n1')
    assert recorder.names() == ['tag_created', 'note_created', 'note_updated', 'search_performed', 'tag_deleted',
                                'note_deleted']
    assert recorder.events[3]['properties'] == {'query': 'changed', 'results': 1}


def test_seed_predefined(make_store):
    store = make_store(seed_predefined=True)
    assert ids(store.get_all_categories()) == ['default', 'personal', 'work', 'ideas', 'learning', 'projects',
                                               'travel', 'health', 'finance']
    assert len(store.get_all_tags()) == 15
    store.clear_all_data()
    assert len(store.get_all_categories()) == 9


def test_custom_default_category(make_store):
    store = make_store(default_category_id='cat_default')
    assert store.get_category('cat_default').name == 'General'
    assert store.get_category('default') is None
    store.create_tag(Tag('t1', 'work'))
    store.create_note(note('n1', category_id='cat_default', tag_ids={'t1'}))
    assert store.get_tag('t1').usage_count == 1
    assert store.get_category('cat_default').note_count == 1
    store.delete_tag('t1')
    assert store.get_note('n1').tag_ids == set()
    with pytest.raises(ProtectedEntityError):
        store.delete_category('cat_default')


def test_concurrent_writes(store):
    def work(prefix):
        for i in range(10):
            store.create_note(note(f'{prefix}{i}'))

    threads = [threading.Thread(target=work, args=(p,)) for p in 'abcd']
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert len(store.get_all_notes()) == 40
    assert store.get_category('default').note_count == 40
