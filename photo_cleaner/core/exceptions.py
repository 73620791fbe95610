# core/exceptions.py


class PhotoCleanerError(Exception):
    """Base class for all photo cleaner errors"""


class PhotoFingerprintError(PhotoCleanerError):
    """
    A single photo could not be fingerprinted or persisted.

    Recovered locally: the photo is excluded from this run's clustering.
    """

    def __init__(self, local_identifier: str, message: str):
        super().__init__(f"{local_identifier}: {message}")
        self.local_identifier = local_identifier


class GroupPersistenceError(PhotoCleanerError):
    """
    Persisting one duplicate group failed and its transaction was rolled back.

    Recovered per group: the remaining clusters are still processed.
    """

    def __init__(self, group_key: str, message: str):
        super().__init__(f"group {group_key[:12]}: {message}")
        self.group_key = group_key


class StoreUnavailableError(PhotoCleanerError):
    """The persistent store is not initialized or its connection was lost"""


class MalformedFingerprintError(PhotoCleanerError, ValueError):
    """A fingerprint of the wrong length or alphabet reached a comparison"""


class SessionStateError(PhotoCleanerError):
    """Illegal analysis session status transition"""


class AnalysisInProgressError(PhotoCleanerError):
    """Another analysis run is already active"""
