"""
Exception hierarchy for the document export pipeline and its collaborators.

Only ``DownloadFailure`` is recovered inside the pipeline (the document is
skipped). Every other ``ExportError`` routes the job to ``failed``.
"""


class ExportError(RuntimeError):
    """Base class for export pipeline failures."""


class ClaimFailure(ExportError):
    """The pending-job query or the conditional claim update errored."""


class NoValidDocuments(ExportError):
    def __init__(self, message: str = "No valid documents found for export"):
        super().__init__(message)


class DownloadFailure(ExportError):
    def __init__(self, document_id: str, message: str):
        super().__init__(message)
        self.document_id = document_id


class ArchiveFailure(ExportError):
    pass


class UploadFailure(ExportError):
    pass


class StatusUpdateFailure(ExportError):
    pass


class TimeoutFailure(ExportError):
    def __init__(self, message: str = "Processing timeout"):
        super().__init__(message)


class StorageError(RuntimeError):
    """An object storage call was rejected."""

    def __init__(self, message: str, key: str | None = None):
        super().__init__(message)
        self.key = key


class ObjectNotFound(StorageError):
    pass


class ObjectExists(StorageError):
    pass
