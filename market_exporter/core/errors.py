"""
Error kinds raised by the export pipeline.

The HTTP layer maps ``code`` to the ``X-Error-Code`` header and ``status_code``
to the response status.
"""


class ExportError(Exception):
    """Base exception for export pipeline errors."""

    code = "export-error"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ExportError):
    """Missing or malformed step parameters, or a step that does not fit the run."""

    code = "generation-error"
    status_code = 500


class FilesystemError(ExportError):
    """Staged file create/append/rename or file management failure."""

    code = "filesystem-error"
    status_code = 500


class SourceFetchError(ExportError):
    """Catalog source failed to deliver a page, a count or the category tree."""

    code = "source-error"
    status_code = 502


class ExportPermissionError(ExportError):
    """Caller is not allowed to trigger exports or manage files."""

    code = "permission-error"
    status_code = 403


class RunInProgressError(ExportError):
    """The run lock is held by another run, or no run is active."""

    code = "run-in-progress"
    status_code = 409


class FeedConfigError(ExportError):
    """The mapping configuration cannot be used to render a feed."""

    code = "config-error"
    status_code = 500
