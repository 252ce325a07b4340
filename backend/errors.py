"""Exception hierarchy for the convocation RFID tracker.

Every failure of a primary tag operation is raised as a ``TrackerError``
subclass. The HTTP layer maps ``http_status`` onto the response; bulk
operations catch these per item and report them as data instead.
"""


class TrackerError(Exception):
    """Base exception for tracker operations."""

    http_status: int = 500


class TagValidationError(TrackerError):
    """Required input is missing or malformed."""

    http_status = 400


class TagNotFoundError(TrackerError):
    """No live record exists for the EPC or convocation number."""

    http_status = 404


class DuplicateTagError(TrackerError):
    """An EPC is already registered."""

    http_status = 409

    def __init__(self, message: str, existing: object = None) -> None:
        super().__init__(message)
        self.existing = existing


class ConcurrentUpdateError(TrackerError):
    """The record changed between read and write."""

    http_status = 409


class BackendUnavailableError(TrackerError):
    """The record store or an upstream service could not be reached."""

    http_status = 503
