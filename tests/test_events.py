import logging

from freezegun import freeze_time

from notevault.events import EventRecorder, NullEventRecorder, LoggingEventRecorder, MemoryEventRecorder


def test_null_recorder():
    assert NullEventRecorder is EventRecorder
    EventRecorder().record('note_created', {'note_id': 'n1'})


@freeze_time('2020-01-01')
def test_memory_recorder_keeps_latest():
    recorder = MemoryEventRecorder(limit=2)
    for i in range(3):
        recorder.record('note_created', {'note_id': f'n{i}'})
    assert recorder.names() == ['note_created', 'note_created']
    assert [e['properties']['note_id'] for e in recorder.events] == ['n1', 'n2']
    assert recorder.events[0]['timestamp'].year == 2020


def test_memory_recorder_copies_properties():
    recorder = MemoryEventRecorder()
    properties = {'query': 'x'}
    recorder.record('search_performed', properties)
    properties['query'] = 'y'
    assert recorder.events[0]['properties'] == {'query': 'x'}


def test_logging_recorder(caplog):
    caplog.set_level(logging.INFO, logger='notevault.events')
    LoggingEventRecorder().record('tag_deleted', {'tag_id': 't1'})
    assert caplog.records[0].name == 'notevault.events'
    assert caplog.records[0].getMessage() == "Event: tag_deleted, Properties: {'tag_id': 't1'}"
