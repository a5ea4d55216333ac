"""Exception types raised by deductsync components."""


class DeductSyncError(Exception):
    """Base class for all deductsync errors."""


class ValidationError(DeductSyncError):
    """A submitted record is missing required fields."""


class RecordNotFoundError(DeductSyncError):
    """No cached record carries the requested identifier."""

    def __init__(self, deduction_id: object):
        super().__init__(f"Deduction not found: {deduction_id}")
        self.deduction_id = deduction_id


class RemoteStoreError(DeductSyncError):
    """A remote store request failed."""


class AssetFetchError(DeductSyncError):
    """An asset could not be fetched while populating a cache."""
