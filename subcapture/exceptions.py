"""Exception hierarchy for subcapture."""


class SubcaptureError(Exception):
    """Base exception for all subcapture errors."""


class ExtractionError(SubcaptureError):
    """A response body could not be read or decoded into subtitle text."""


class StorageError(SubcaptureError):
    """The durable key-value store failed to read or write."""
