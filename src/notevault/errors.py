"""Exceptions raised by stores.

These represent expected business conditions which callers can recover from. A lookup for a missing id is *not*
an error: stores return None in that case.
"""


class StoreError(Exception):
    """Base class for the errors a :class:`notevault.stores.base.Store` raises deliberately."""
    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class DuplicateNameError(StoreError):
    """Raised when a category or tag name matches an existing one, ignoring case."""
    def __init__(self, kind: str, name: str):
        super().__init__(f'{kind.capitalize()} already exists: {name}')
        self.kind = kind
        self.name = name


class DuplicateIdError(StoreError):
    """Raised when creating an entity whose id is already in use."""
    def __init__(self, kind: str, entity_id: str):
        super().__init__(f'{kind.capitalize()} id already exists: {entity_id}')
        self.kind = kind
        self.entity_id = entity_id


class ProtectedEntityError(StoreError):
    """Raised when attempting to delete the default category."""
    def __init__(self, kind: str, entity_id: str):
        super().__init__(f'Cannot delete protected {kind}: {entity_id}')
        self.kind = kind
        self.entity_id = entity_id


class UnknownReferenceError(StoreError):
    """Raised when a note refers to a category or tags that do not exist."""
    def __init__(self, note_id: str, kind: str, missing_ids):
        super().__init__(f'Note {note_id} refers to unknown {kind}: {", ".join(sorted(missing_ids))}')
        self.note_id = note_id
        self.kind = kind
        self.missing_ids = set(missing_ids)


class InvalidSnapshotError(StoreError):
    """Raised by imports when the snapshot cannot be used. Nothing has been changed when this is raised."""
