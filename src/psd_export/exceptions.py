"""
Exceptions raised by psd_export.

Every error that the exporter recovers from derives from :py:class:`ExportError`.
:py:class:`Cancelled` deliberately does not, so that node-level handlers never
swallow a cancellation request.
"""


class ExportError(Exception):
    """Base class of psd_export errors."""


class DecodeError(ExportError):
    """The document cannot be opened or decoded."""


class RenderError(ExportError):
    """A node cannot be rendered to a raster image."""


class OutsideCanvasError(ExportError):
    """The image has no intersection with the canvas."""


class TransparentImageError(ExportError):
    """The image has no pixel with a non-zero alpha."""


class SaveError(ExportError):
    """An image file cannot be written."""


class StoreError(ExportError):
    """A persistence operation failed."""


class ProjectNotFoundError(StoreError):
    """The requested project does not exist."""

    def __init__(self, project_id):
        super().__init__("Project not found: %s" % project_id)
        self.project_id = project_id


class InvalidProjectError(ExportError):
    """The project cannot be created or is in the wrong state."""


class Cancelled(Exception):
    """The running job has been asked to stop."""
