"""
Storage exceptions.

The database and the pub/sub broker raise these. The API maps
NotFoundError to 404; the rest surface as 500 or a failed readiness probe.
"""


class StorageError(Exception):
    """Base exception for all storage errors."""

    pass


class ConnectionError(StorageError):
    """The database or broker is unreachable, or was used before connect()."""

    pass


class NotFoundError(StorageError):
    """
    A batch, job, execution or snapshot does not exist.

    Attributes:
        entity: Kind of row, e.g. ``"Execution"``.
        entity_id: The id that was looked up.
    """

    def __init__(self, entity: str, entity_id: object):
        super().__init__(f"{entity} not found: {entity_id}")
        self.entity = entity
        self.entity_id = entity_id


class ConfigurationError(StorageError):
    """A storage section is missing from the merged config."""

    pass
