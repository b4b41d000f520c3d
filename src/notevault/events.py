"""Analytics hooks for stores.

Stores report what they do to an :class:`EventRecorder` passed in by their configuration, so they have no dependency
on any particular telemetry destination.
"""

from collections import deque
import logging
from typing import Dict, Any, List

from notevault.models import utcnow


logger = logging.getLogger(__name__)

NOTE_CREATED = 'note_created'
NOTE_UPDATED = 'note_updated'
NOTE_DELETED = 'note_deleted'
CATEGORY_CREATED = 'category_created'
CATEGORY_DELETED = 'category_deleted'
TAG_CREATED = 'tag_created'
TAG_DELETED = 'tag_deleted'
SEARCH_PERFORMED = 'search_performed'
DATA_IMPORTED = 'data_imported'
DATA_CLEARED = 'data_cleared'


class EventRecorder:
    """Base class for receivers of analytics events. The default implementation discards everything."""
    def record(self, event: str, properties: Dict[str, Any]) -> None:
        pass


NullEventRecorder = EventRecorder


class LoggingEventRecorder(EventRecorder):
    """Writes each event to the ``notevault.events`` logger."""
    def __init__(self, level: int = logging.INFO):
        self.level = level

    def record(self, event: str, properties: Dict[str, Any]) -> None:
        logger.log(self.level, 'Event: %s, Properties: %s', event, properties)


class MemoryEventRecorder(EventRecorder):
    """Keeps the most recent events in memory, discarding the oldest once ``limit`` is reached."""
    def __init__(self, limit: int = 1000):
        self.events = deque(maxlen=limit)

    def record(self, event: str, properties: Dict[str, Any]) -> None:
        self.events.append({'event': event, 'properties': dict(properties), 'timestamp': utcnow()})

    def names(self) -> List[str]:
        return [e['event'] for e in self.events]
