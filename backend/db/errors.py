class StorageError(Exception):
    """Base class for rejected reads and writes against the data layer."""


class ConstraintViolationError(StorageError):
    """Missing required field, dangling foreign key, or uniqueness violation."""


class InvalidTransitionError(ConstraintViolationError):
    """A one-way state field was asked to move backwards."""


class InvalidPayloadError(StorageError):
    """An insert payload carried a server-owned field or a value of the wrong type."""

    def __init__(self, message: str, errors: list[dict] | None = None):
        super().__init__(message)
        self.errors = errors or []


class RecordNotFoundError(StorageError):
    def __init__(self, entity: str, identifier):
        super().__init__(f"{entity} not found: {identifier}")
        self.entity = entity
        self.identifier = identifier
