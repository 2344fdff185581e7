# app/core/errors.py
"""Error kinds raised by the storage engine.

Every failure that reaches a caller is a ``DriveError``. The ``kind`` is
what the HTTP layer reports; backend diagnostics stay in the logs.
"""


class DriveError(Exception):
    kind = "DriveError"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.kind)
        self.message = message or self.kind


class InvalidInput(DriveError):
    kind = "InvalidInput"


class InvalidArchive(InvalidInput):
    kind = "InvalidArchive"


class SizeLimitExceeded(DriveError):
    kind = "SizeLimitExceeded"

    def __init__(self, size: int, limit: int, name: str = "") -> None:
        self.size = size
        self.limit = limit
        target = f"'{name}' " if name else ""
        super().__init__(f"File {target}is {size} bytes, limit is {limit} bytes")


class Forbidden(DriveError):
    kind = "Forbidden"


class NotFound(DriveError):
    kind = "NotFound"


class EmptyFolder(NotFound):
    kind = "EmptyFolder"


class StoreUnavailable(DriveError):
    kind = "StoreUnavailable"


class RepositoryUnavailable(DriveError):
    kind = "RepositoryUnavailable"


class PartialFailure(DriveError):
    kind = "PartialFailure"
