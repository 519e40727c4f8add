import logging
import threading
from typing import Any, Optional, Sequence

from PIL import Image

from psd_export.constants import NodeKind
from psd_export.exceptions import RenderError
from psd_export.models import Rect, SliceInfo, TextInfo

logging.basicConfig(level=logging.DEBUG)


def solid(
    width: int, height: int, color: tuple[int, int, int, int] = (255, 0, 0, 255)
) -> Image.Image:
    return Image.new("RGBA", (width, height), color)


def framed(width: int, height: int, box: tuple[int, int, int, int]) -> Image.Image:
    """Transparent image with an opaque rectangle ``box`` (left, top, right, bottom)."""
    image = Image.new("RGBA", (width, height), (0, 0, 0, 0))
    image.paste((0, 0, 255, 255), box)
    return image


class FakeNode:
    """In-memory document node returning prepared images."""

    def __init__(
        self,
        name: str,
        kind: NodeKind = NodeKind.LAYER,
        bounds: Rect = Rect(),
        image: Optional[Image.Image] = None,
        image_without_text: Optional[Image.Image] = None,
        raw_image: Optional[Image.Image] = None,
        children: Sequence["FakeNode"] = (),
        visible: bool = True,
        opacity: int = 255,
        blend_mode: str = "normal",
        text: str = "",
        info: Optional[TextInfo] = None,
        key: Optional[str] = None,
    ):
        self.name = name
        self.kind = kind
        self.bounds = bounds
        self.image = image
        self.image_without_text = image_without_text
        self.raw_image = raw_image
        self.children = list(children)
        self.visible = visible
        self.opacity = opacity
        self.blend_mode = blend_mode
        self.text = text
        self.info = info
        self.key = key or "node_%s" % name
        self.has_mask = False
        self.render_calls = 0

    def __repr__(self) -> str:
        return "FakeNode(%r)" % self.name

    def is_text_layer(self) -> bool:
        return self.kind == NodeKind.TEXT

    def text_content(self) -> str:
        return self.text

    def text_info(self) -> Optional[TextInfo]:
        return self.info

    def to_raster(self) -> Image.Image:
        self.render_calls += 1
        if self.image is None:
            raise RenderError("No image for %s" % self.name)
        return self.image.copy()

    def to_raster_without_text(self) -> Image.Image:
        if self.image_without_text is None:
            raise RenderError("No text-free image for %s" % self.name)
        return self.image_without_text.copy()

    def to_raw_raster(self) -> Image.Image:
        if self.raw_image is None:
            raise RenderError("No pixels for %s" % self.name)
        return self.raw_image.copy()


def layer(name: str, x: int, y: int, image: Optional[Image.Image], **kwargs: Any) -> FakeNode:
    size = image.size if image is not None else (0, 0)
    kwargs.setdefault("bounds", Rect(x, y, *size))
    return FakeNode(name, NodeKind.LAYER, image=image, **kwargs)


def text(name: str, x: int, y: int, image: Optional[Image.Image], **kwargs: Any) -> FakeNode:
    source = image if image is not None else kwargs.get("raw_image")
    size = source.size if source is not None else (0, 0)
    kwargs.setdefault("bounds", Rect(x, y, *size))
    return FakeNode(name, NodeKind.TEXT, image=image, **kwargs)


def group(name: str, children: Sequence[FakeNode], **kwargs: Any) -> FakeNode:
    """Group whose bounds default to the union of its children."""
    if "bounds" not in kwargs:
        boxes = [c.bounds for c in children if not c.bounds.is_empty()]
        if boxes:
            kwargs["bounds"] = Rect.from_bbox(
                (
                    min(b.x for b in boxes),
                    min(b.y for b in boxes),
                    max(b.right for b in boxes),
                    max(b.bottom for b in boxes),
                )
            )
    return FakeNode(name, NodeKind.GROUP, children=children, **kwargs)


def root(*children: FakeNode) -> FakeNode:
    return FakeNode("root", NodeKind.GROUP, children=children)


class FakeDocument:
    """In-memory document."""

    def __init__(
        self,
        width: int,
        height: int,
        tree: FakeNode,
        image: Optional[Image.Image] = None,
        slices: Sequence[SliceInfo] = (),
    ):
        self.width = width
        self.height = height
        self._tree = tree
        self._image = image if image is not None else solid(width, height)
        self._slices = list(slices)

    def header(self) -> tuple[int, int]:
        return self.width, self.height

    def flattened_image(self) -> Image.Image:
        return self._image

    def slices(self) -> list[SliceInfo]:
        return list(self._slices)

    def tree(self) -> FakeNode:
        return self._tree


class BlockingNode(FakeNode):
    """Layer whose render blocks until released, for cancellation tests."""

    def __init__(self, name: str, **kwargs: Any):
        super().__init__(
            name, NodeKind.LAYER, bounds=Rect(0, 0, 4, 4), image=solid(4, 4), **kwargs
        )
        self.entered = threading.Event()
        self.release = threading.Event()

    def to_raster(self) -> Image.Image:
        self.entered.set()
        self.release.wait(5)
        return super().to_raster()
