class IngestError(Exception):
    """Base class for failures raised by the ingestion core."""


class DecodeError(IngestError):
    """Archive bytes are not a valid or complete archive."""


class ParseError(IngestError):
    """Top-level JSON is invalid or the file type is unsupported."""


class PersistenceError(IngestError):
    """A page store read or write failed."""


class ImportCancelled(IngestError):
    """The import job observed a cancellation request."""
