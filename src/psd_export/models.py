"""
Data model of the exporter.

Persisted records (:py:class:`Project`, :py:class:`LayerRecord`) are owned by
the store, see :py:mod:`psd_export.store`. :py:class:`ExportAttributes` lives
only while a single node is processed: it is created when the node is visited,
narrowed in place by clipping and trimming, and consumed once to build a
:py:class:`LayerRecord`.
"""

import datetime
from typing import Any, Optional

from attrs import define, field

from psd_export.constants import (
    BASE_SCALE,
    ProcessingMode,
    ProjectStatus,
    RecordKind,
)


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


@define(frozen=True)
class Rect:
    """
    Integer rectangle given by its top-left corner and size.

    .. py:attribute:: x
    .. py:attribute:: y
    .. py:attribute:: width
    .. py:attribute:: height
    """

    x: int = field(default=0, converter=int)
    y: int = field(default=0, converter=int)
    width: int = field(default=0, converter=int)
    height: int = field(default=0, converter=int)

    @classmethod
    def from_bbox(cls, bbox: tuple[int, int, int, int]) -> "Rect":
        """Build from a ``(left, top, right, bottom)`` tuple."""
        left, top, right, bottom = bbox
        return cls(left, top, right - left, bottom - top)

    @property
    def right(self) -> int:
        return self.x + self.width

    @property
    def bottom(self) -> int:
        return self.y + self.height

    @property
    def bbox(self) -> tuple[int, int, int, int]:
        """``(left, top, right, bottom)`` tuple, as used by :py:meth:`PIL.Image.Image.crop`."""
        return (self.x, self.y, self.right, self.bottom)

    def is_empty(self) -> bool:
        return self.width <= 0 or self.height <= 0


@define
class TransparencyBounds:
    """
    Tight bounding box of the pixels whose alpha is greater than zero.

    Coordinates are inclusive. When ``found_opaque`` is false the box is
    meaningless.

    .. py:attribute:: min_x
    .. py:attribute:: min_y
    .. py:attribute:: max_x
    .. py:attribute:: max_y
    .. py:attribute:: found_opaque
    """

    min_x: int = 0
    min_y: int = 0
    max_x: int = -1
    max_y: int = -1
    found_opaque: bool = False

    @property
    def width(self) -> int:
        return self.max_x - self.min_x + 1

    @property
    def height(self) -> int:
        return self.max_y - self.min_y + 1

    @property
    def box(self) -> tuple[int, int, int, int]:
        """Crop box ``(left, top, right, bottom)`` with exclusive right/bottom."""
        return (self.min_x, self.min_y, self.max_x + 1, self.max_y + 1)

    def is_tight(self, size: tuple[int, int]) -> bool:
        """Return True if the box covers the whole image of the given size."""
        width, height = size
        return (
            self.min_x == 0
            and self.min_y == 0
            and self.max_x == width - 1
            and self.max_y == height - 1
        )


@define
class TextInfo:
    """Fonts and font sizes used by a text layer."""

    fonts: list[str] = field(factory=list)
    sizes: list[float] = field(factory=list)


@define(frozen=True)
class SliceInfo:
    """
    User-defined slice of the document.

    .. py:attribute:: id
    .. py:attribute:: name
    .. py:attribute:: rect
    """

    id: int
    name: str = ""
    rect: Rect = field(factory=Rect)

    @property
    def display_name(self) -> str:
        return self.name or "Slice %d" % self.id


@define
class Project:
    """
    Export project.

    The exporter only reads and writes the status, dimension and timestamp
    fields; the rest is set when the project is created.
    """

    name: str
    psd_path: str
    export_path: str = ""
    status: ProjectStatus = field(
        default=ProjectStatus.PENDING, converter=ProjectStatus
    )
    export_scales: list[str] = field(factory=lambda: [BASE_SCALE])
    width: int = 0
    height: int = 0
    processing_mode: ProcessingMode = field(
        default=ProcessingMode.NORMAL, converter=ProcessingMode.parse
    )
    processing_started_at: Optional[datetime.datetime] = None
    processing_finished_at: Optional[datetime.datetime] = None
    created_at: datetime.datetime = field(factory=_now)
    id: Optional[int] = None

    @property
    def is_aggressive(self) -> bool:
        return self.processing_mode == ProcessingMode.AGGRESSIVE

    def mark_processing(self) -> None:
        self.status = ProjectStatus.PROCESSING
        self.processing_started_at = _now()

    def mark_ready(self) -> None:
        self.status = ProjectStatus.READY
        self.processing_finished_at = _now()

    def mark_error(self) -> None:
        self.status = ProjectStatus.ERROR
        self.processing_finished_at = _now()

    def mark_pending(self) -> None:
        self.status = ProjectStatus.PENDING
        self.processing_finished_at = _now()

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "psd_path": self.psd_path,
            "export_path": self.export_path,
            "status": self.status.value,
            "export_scales": list(self.export_scales),
            "width": self.width,
            "height": self.height,
            "processing_mode": self.processing_mode.value,
            "processing_started_at": _timestamp(self.processing_started_at),
            "processing_finished_at": _timestamp(self.processing_finished_at),
            "created_at": _timestamp(self.created_at),
        }


@define
class LayerRecord:
    """
    Persisted layer, group, text or slice.

    ``parent_id`` is a plain reference to another record of the same project;
    the tree is never materialized in memory.
    """

    project_id: int
    resource_id: str
    name: str
    layer_type: RecordKind = field(converter=RecordKind)
    x: int = 0
    y: int = 0
    width: int = 0
    height: int = 0
    content: str = ""
    image_path: str = ""
    metadata: dict[str, Any] = field(factory=dict)
    parent_id: Optional[int] = None
    hidden: bool = False
    created_at: datetime.datetime = field(factory=_now)
    id: Optional[int] = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "resource_id": self.resource_id,
            "name": self.name,
            "layer_type": self.layer_type.value,
            "x": self.x,
            "y": self.y,
            "width": self.width,
            "height": self.height,
            "content": self.content,
            "image_path": self.image_path,
            "metadata": dict(self.metadata),
            "parent_id": self.parent_id,
            "hidden": self.hidden,
        }


@define
class ExportAttributes:
    """
    Transient attributes of the node being exported.

    The bounding box starts as the node's reported bounds and is narrowed in
    place by :py:meth:`place` as the image is clipped and trimmed.
    """

    project_id: int
    name: str
    resource_id: str
    kind: RecordKind = field(converter=RecordKind)
    x: int = 0
    y: int = 0
    width: int = 0
    height: int = 0
    content: str = ""
    image_path: str = ""
    metadata: dict[str, Any] = field(factory=dict)
    parent_id: Optional[int] = None
    hidden: bool = False

    def place(self, x: int, y: int, size: tuple[int, int]) -> None:
        self.x, self.y = x, y
        self.width, self.height = size

    def to_record(self) -> LayerRecord:
        return LayerRecord(
            project_id=self.project_id,
            resource_id=self.resource_id,
            name=self.name,
            layer_type=self.kind,
            x=self.x,
            y=self.y,
            width=self.width,
            height=self.height,
            content=self.content,
            image_path=self.image_path,
            metadata=dict(self.metadata),
            parent_id=self.parent_id,
            hidden=self.hidden,
        )


def _timestamp(value: Optional[datetime.datetime]) -> Optional[int]:
    if value is None:
        return None
    return int(value.timestamp())


__all__ = [
    "ExportAttributes",
    "LayerRecord",
    "Project",
    "Rect",
    "SliceInfo",
    "TextInfo",
    "TransparencyBounds",
]
