"""A minimal embedded key-value engine used by :class:`notevault.stores.embedded.EmbeddedStore`.

Each :class:`Box` is an ordered map from string keys to plain-dict records. If the box has a directory, its entire
contents are rewritten to a YAML file after every change, and loaded from that file when the box is opened.

Changes are expressed as commands (:class:`PutCmd`, :class:`PutAllCmd`, :class:`DeleteCmd`, :class:`ClearCmd`) and
applied in order by :meth:`BoxSet.apply`. Every command is idempotent: applying it a second time has no further
effect. Commands within a group are *not* applied atomically. If a :attr:`BoxSet.journal_path` is configured, each
group is written to the journal before it is applied and marked finished afterward. The journal is emptied whenever
no group is left unfinished, and unfinished groups are replayed the next time the box set is opened.
"""

import copy
import dataclasses
from dataclasses import dataclass
import json
import logging
import os
import os.path
from tempfile import mkstemp
from typing import Dict, List, Iterable, Iterator, Optional

import shortuuid
import yaml


logger = logging.getLogger(__name__)


class Box:
    """An ordered map of records, optionally persisted to ``<directory>/<name>.yaml``.

    Iteration (:meth:`keys`, :meth:`values`) is in ascending key order. Records handed in or out are copied, so
    callers can modify them freely.
    """
    def __init__(self, name: str, directory: str = None):
        self.name = name
        self.path = os.path.join(directory, f'{name}.yaml') if directory else None
        self._records = {}
        if self.path and os.path.exists(self.path):
            self._load()

    def _load(self) -> None:
        with open(self.path, 'r') as file:
            loaded = yaml.safe_load(file)
        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ValueError(f'Box file does not contain a mapping: {self.path}')
        self._records = {str(k): v for k, v in loaded.items()}

    def flush(self) -> None:
        """Writes the box to its file, if it has one. The file is replaced, never partially written."""
        if not self.path:
            return
        parent = os.path.dirname(self.path)
        os.makedirs(parent, exist_ok=True)
        fd, tmp = mkstemp(prefix=f'.{self.name}', dir=parent)
        try:
            with os.fdopen(fd, 'w') as file:
                yaml.safe_dump({k: self._records[k] for k in self.keys()}, file,
                               default_flow_style=False, sort_keys=False, allow_unicode=True)
            os.replace(tmp, self.path)
        except BaseException:
            os.remove(tmp)
            raise

    def get(self, key: str) -> Optional[dict]:
        record = self._records.get(key)
        return copy.deepcopy(record) if record is not None else None

    def put(self, key: str, record: dict) -> None:
        self._records[key] = copy.deepcopy(record)
        self.flush()

    def put_all(self, records: Dict[str, dict]) -> None:
        for key, record in records.items():
            self._records[key] = copy.deepcopy(record)
        self.flush()

    def delete(self, key: str) -> None:
        if self._records.pop(key, None) is not None:
            self.flush()

    def clear(self) -> None:
        self._records.clear()
        self.flush()

    def keys(self) -> List[str]:
        return sorted(self._records)

    def values(self) -> Iterator[dict]:
        for key in self.keys():
            yield copy.deepcopy(self._records[key])

    def __len__(self):
        return len(self._records)

    def __contains__(self, key):
        return key in self._records


@dataclass
class BoxCmd:
    """Base class for requests to change the contents of a box."""

    box: str
    """Name of the box to change."""


@dataclass
class PutCmd(BoxCmd):
    """Stores the record under the key, replacing any existing record."""

    key: str
    record: dict


@dataclass
class PutAllCmd(BoxCmd):
    """Stores several records at once; the box file is written once for all of them."""

    records: Dict[str, dict]


@dataclass
class DeleteCmd(BoxCmd):
    """Removes the record with the key. Does nothing if there is no such record."""

    key: str


@dataclass
class ClearCmd(BoxCmd):
    """Removes every record in the box."""


_CMD_TYPES = {cls.__name__: cls for cls in (PutCmd, PutAllCmd, DeleteCmd, ClearCmd)}


def cmd_as_json(cmd: BoxCmd) -> dict:
    d = dataclasses.asdict(cmd)
    d['class'] = type(cmd).__name__
    return d


def cmd_from_json(d: dict) -> BoxCmd:
    d = dict(d)
    cls = _CMD_TYPES[d.pop('class')]
    return cls(**d)


class BoxSet:
    """The group of boxes that make up one embedded store, plus the optional journal.

    .. attribute:: journal_path
       :type: Optional[str]

       If set, command groups are logged here as JSON lines so that an interrupted group can be finished later.
    """
    def __init__(self, names: Iterable[str], directory: str = None, journal_path: str = None):
        self.directory = directory
        self.journal_path = journal_path
        self.boxes = {name: Box(name, directory) for name in names}
        self._unfinished = set()
        if journal_path:
            os.makedirs(os.path.dirname(journal_path) or '.', exist_ok=True)
            self.replay_journal()

    def __getitem__(self, name: str) -> Box:
        return self.boxes[name]

    def apply(self, cmds: List[BoxCmd]) -> None:
        """Applies the commands in order. Each command is persisted as soon as it is applied."""
        if not cmds:
            return
        entry_id = self._journal_begin(cmds)
        for cmd in cmds:
            self._apply_one(cmd)
        self._journal_end(entry_id)

    def _apply_one(self, cmd: BoxCmd) -> None:
        box = self.boxes[cmd.box]
        if isinstance(cmd, PutCmd):
            box.put(cmd.key, cmd.record)
        elif isinstance(cmd, PutAllCmd):
            box.put_all(cmd.records)
        elif isinstance(cmd, DeleteCmd):
            box.delete(cmd.key)
        elif isinstance(cmd, ClearCmd):
            box.clear()
        else:
            raise TypeError(f'Unsupported box command: {cmd!r}')

    def _journal_write(self, entry: dict) -> None:
        with open(self.journal_path, 'a') as file:
            print(json.dumps(entry), file=file)
            file.flush()
            os.fsync(file.fileno())

    def _journal_begin(self, cmds: List[BoxCmd]) -> Optional[str]:
        if not self.journal_path:
            return None
        entry_id = shortuuid.uuid()
        self._unfinished.add(entry_id)
        self._journal_write({'begin': entry_id, 'cmds': [cmd_as_json(c) for c in cmds]})
        return entry_id

    def _journal_end(self, entry_id: Optional[str]) -> None:
        if not entry_id:
            return
        self._unfinished.discard(entry_id)
        if self._unfinished:
            self._journal_write({'end': entry_id})
        else:
            # nothing left to replay
            self._truncate_journal()

    def _truncate_journal(self) -> None:
        with open(self.journal_path, 'w'):
            pass

    def pending_journal_entries(self) -> List[List[BoxCmd]]:
        """Returns the command groups that were started but never marked finished, oldest first."""
        if not (self.journal_path and os.path.exists(self.journal_path)):
            return []
        pending = {}
        with open(self.journal_path, 'r') as file:
            for lineno, line in enumerate(file, 1):
                if not line.strip():
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    # a torn write can only be the group that was being logged when the process died,
                    # and none of its commands were applied
                    logger.warning('Ignoring unreadable journal line %d in %s', lineno, self.journal_path)
                    continue
                if 'begin' in entry:
                    pending[entry['begin']] = [cmd_from_json(c) for c in entry['cmds']]
                elif 'end' in entry:
                    pending.pop(entry['end'], None)
        return list(pending.values())

    def replay_journal(self) -> int:
        """Re-applies unfinished command groups, then empties the journal. Returns the number of groups replayed."""
        groups = self.pending_journal_entries()
        for cmds in groups:
            logger.info('Replaying %d unfinished command(s) from %s', len(cmds), self.journal_path)
            for cmd in cmds:
                self._apply_one(cmd)
        if os.path.exists(self.journal_path):
            self._truncate_journal()
        self._unfinished.clear()
        return len(groups)
