"""
Various constants for psd_export
"""

from enum import Enum


class NodeKind(str, Enum):
    """
    Kind of a document node as seen by the exporter.
    """

    GROUP = "group"
    TEXT = "text"
    LAYER = "layer"


class RecordKind(str, Enum):
    """
    Type tag of a persisted layer record.
    """

    SLICE = "slice"
    LAYER = "layer"
    GROUP = "group"
    TEXT = "text"

    @classmethod
    def from_node_kind(cls, kind: NodeKind) -> "RecordKind":
        return cls(kind.value)


class ProjectStatus(str, Enum):
    """
    Processing status of a project.

    ``PENDING -> PROCESSING -> {READY | ERROR}``. Stopping a job resets the
    project to ``PENDING``.
    """

    PENDING = "pending"
    PROCESSING = "processing"
    READY = "ready"
    ERROR = "error"


class ProcessingMode(str, Enum):
    """
    Export processing mode.

    ``NORMAL`` clips every raster to the canvas. ``AGGRESSIVE`` additionally
    trims it to the tight bounding box of non-transparent pixels.
    """

    NORMAL = "normal"
    AGGRESSIVE = "aggressive"

    @classmethod
    def parse(cls, value) -> "ProcessingMode":
        """Unknown or empty values fall back to ``NORMAL``."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            return cls.NORMAL


#: Scale factor whose file name carries no ``@{n}x`` suffix.
BASE_SCALE = "1x"

#: Characters replaced in file names derived from layer names.
UNSAFE_FILENAME_CHARS = '/\\:*?"<>| '

#: Accepted document extensions.
DOCUMENT_EXTENSIONS = (".psd", ".psb")

PREVIEW_BASENAME = "full_preview"
PROCESSED_DIRNAME = "processed"
