"""
Document module.

This module is the boundary between the exporter and the PSD/PSB decoder. It
declares the interfaces the exporter relies on (:py:class:`DocumentProtocol`
and :py:class:`NodeProtocol`) and implements them on top of
:py:class:`psd_tools.PSDImage`.

Only this module imports psd-tools; the rest of the package sees decoded
documents through the protocols, which keeps the exporter testable with plain
in-memory nodes.

Example usage::

    from psd_export.document import open_document

    document = open_document('design.psd')
    width, height = document.header()
    for node in document.tree().children:
        print(node.kind, node.name, node.bounds)
"""

import logging
import os
from typing import Any, Callable, Optional, Protocol, Sequence, Union

from PIL import Image
from psd_tools import PSDImage
from psd_tools.constants import Resource

from psd_export.constants import NodeKind
from psd_export.exceptions import DecodeError, RenderError
from psd_export.models import Rect, SliceInfo, TextInfo

logger = logging.getLogger(__name__)


class NodeProtocol(Protocol):
    """
    Protocol defining a node of the document tree.

    The root node is a sentinel without visual content; only its descendants
    are exported.
    """

    @property
    def name(self) -> str:
        """Node name."""
        ...

    @property
    def key(self) -> str:
        """Stable identifier of the node within the document."""
        ...

    @property
    def kind(self) -> NodeKind:
        """Kind of the node."""
        ...

    @property
    def visible(self) -> bool:
        """Visibility flag of the node itself."""
        ...

    @property
    def opacity(self) -> int:
        """Opacity in [0, 255]."""
        ...

    @property
    def blend_mode(self) -> str:
        """Blend mode identifier."""
        ...

    @property
    def bounds(self) -> Rect:
        """Reported bounding box. Width and height may be zero."""
        ...

    @property
    def children(self) -> Sequence["NodeProtocol"]:
        """Ordered child nodes."""
        ...

    @property
    def has_mask(self) -> bool:
        """Return True if the node carries a mask."""
        ...

    def is_text_layer(self) -> bool:
        """Return True if the node is a text layer."""
        ...

    def text_content(self) -> str:
        """Text of a text layer, empty otherwise."""
        ...

    def text_info(self) -> Optional[TextInfo]:
        """Fonts and sizes of a text layer, or None."""
        ...

    def to_raster(self) -> Image.Image:
        """Render the node. Raises :py:class:`RenderError` on failure."""
        ...

    def to_raster_without_text(self) -> Image.Image:
        """Render the node without its text layers, aligned with :py:meth:`to_raster`."""
        ...

    def to_raw_raster(self) -> Image.Image:
        """Plain pixel data of the node, without effects."""
        ...


class DocumentProtocol(Protocol):
    """Protocol defining a decoded document."""

    def header(self) -> tuple[int, int]:
        """Canvas ``(width, height)``."""
        ...

    def flattened_image(self) -> Image.Image:
        """Flattened image of the whole document."""
        ...

    def slices(self) -> list[SliceInfo]:
        """User-defined slices."""
        ...

    def tree(self) -> NodeProtocol:
        """Root sentinel of the layer tree."""
        ...


def _val(obj: Any) -> Any:
    """Unwrap psd-tools value elements to their plain Python value."""
    return getattr(obj, "value", obj)


def _rgba(image: Optional[Image.Image], name: str) -> Image.Image:
    if image is None:
        raise RenderError("Nothing to render for %s" % name)
    if image.width == 0 or image.height == 0:
        raise RenderError("Empty image rendered for %s" % name)
    if image.mode != "RGBA":
        image = image.convert("RGBA")
    return image


class PSDNode:
    """
    :py:class:`NodeProtocol` implementation wrapping a psd-tools layer.

    :param layer: :py:class:`psd_tools.api.layers.Layer` or the
        :py:class:`~psd_tools.PSDImage` itself for the root.
    :param path: names of the ancestors, used to build a key for layers
        without an id.
    """

    def __init__(self, layer: Any, path: tuple[str, ...] = ()):
        self._layer = layer
        self._path = path
        self._children: Optional[list["PSDNode"]] = None

    def __repr__(self) -> str:
        return "%s(%r, kind=%s)" % (self.__class__.__name__, self.name, self.kind.value)

    @property
    def name(self) -> str:
        return self._layer.name

    @property
    def key(self) -> str:
        layer_id = getattr(self._layer, "layer_id", -1)
        if layer_id is not None and layer_id >= 0:
            return "node_%d" % layer_id
        return "node_%s" % "/".join(self._path + (self.name,))

    @property
    def kind(self) -> NodeKind:
        if self.is_text_layer():
            return NodeKind.TEXT
        if self._layer.is_group():
            return NodeKind.GROUP
        return NodeKind.LAYER

    @property
    def visible(self) -> bool:
        return bool(self._layer.visible)

    @property
    def opacity(self) -> int:
        return int(getattr(self._layer, "opacity", 255))

    @property
    def blend_mode(self) -> str:
        blend_mode = getattr(self._layer, "blend_mode", None)
        if blend_mode is None:
            return "normal"
        return blend_mode.name.lower()

    @property
    def bounds(self) -> Rect:
        return Rect.from_bbox(self._layer.bbox)

    @property
    def children(self) -> list["PSDNode"]:
        if self._children is None:
            if self._layer.is_group():
                path = self._path + (self.name,)
                self._children = [PSDNode(child, path) for child in self._layer]
            else:
                self._children = []
        return self._children

    @property
    def has_mask(self) -> bool:
        has_mask = getattr(self._layer, "has_mask", None)
        return bool(has_mask()) if callable(has_mask) else False

    def is_text_layer(self) -> bool:
        return self._layer.kind == "type"

    def text_content(self) -> str:
        if not self.is_text_layer():
            return ""
        try:
            text = self._layer.text
        except Exception as e:
            logger.debug("No text content for %s: %s", self.name, e)
            return ""
        if not text:
            return ""
        # Photoshop separates paragraphs with a bare carriage return.
        return text.rstrip("\r\n").replace("\r\n", "\n").replace("\r", "\n")

    def text_info(self) -> Optional[TextInfo]:
        """
        Fonts and sizes used by the style runs of a text layer.

        Returns None when the layer carries no usable engine data.
        """
        if not self.is_text_layer():
            return None
        try:
            fontset = self._layer.resource_dict["FontSet"]
            runs = self._layer.engine_dict["StyleRun"]["RunArray"]
            info = TextInfo()
            for run in runs:
                style = run["StyleSheet"]["StyleSheetData"]
                if "Font" in style:
                    font = str(_val(fontset[int(_val(style["Font"]))]["Name"]))
                    if font not in info.fonts:
                        info.fonts.append(font)
                if "FontSize" in style:
                    size = float(_val(style["FontSize"]))
                    if size not in info.sizes:
                        info.sizes.append(size)
        except (AttributeError, KeyError, IndexError, TypeError, ValueError) as e:
            logger.debug("No text info for %s: %s", self.name, e)
            return None
        return info

    def _composite(self, layer_filter: Callable[[Any], bool]) -> Image.Image:
        try:
            image = self._layer.composite(
                viewport=self._layer.bbox, layer_filter=layer_filter
            )
        except Exception as e:
            raise RenderError("Failed to render %s: %s" % (self.name, e)) from e
        return _rgba(image, self.name)

    def _include(self, layer: Any) -> bool:
        # The exported node itself is rendered even when hidden.
        return layer is self._layer or layer.visible

    def _include_without_text(self, layer: Any) -> bool:
        return self._include(layer) and layer.kind != "type"

    def to_raster(self) -> Image.Image:
        return self._composite(self._include)

    def to_raster_without_text(self) -> Image.Image:
        return self._composite(self._include_without_text)

    def to_raw_raster(self) -> Image.Image:
        try:
            image = self._layer.topil()
        except Exception as e:
            raise RenderError("Failed to read pixels of %s: %s" % (self.name, e)) from e
        return _rgba(image, self.name)


class PSDDocument:
    """:py:class:`DocumentProtocol` implementation wrapping a :py:class:`~psd_tools.PSDImage`."""

    def __init__(self, psdimage: Any):
        self._psd = psdimage

    def header(self) -> tuple[int, int]:
        return int(self._psd.width), int(self._psd.height)

    def flattened_image(self) -> Image.Image:
        try:
            image = self._psd.composite()
        except Exception as e:
            raise RenderError("Failed to flatten document: %s" % e) from e
        return _rgba(image, "document")

    def slices(self) -> list[SliceInfo]:
        resource = self._psd.image_resources.get_data(Resource.SLICES)
        if resource is None:
            return []
        try:
            if getattr(resource, "version", None) == 6:
                return [_slice_from_v6(item) for item in resource.data.items]
            return _slices_from_descriptor(resource.data)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            logger.warning("Unreadable slices resource: %s", e)
            return []

    def tree(self) -> PSDNode:
        return PSDNode(self._psd)


def _slice_from_v6(item: Any) -> SliceInfo:
    top, left, bottom, right = (int(v) for v in item.bbox)
    return SliceInfo(
        id=int(item.slice_id),
        name=str(item.name or ""),
        rect=Rect.from_bbox((left, top, right, bottom)),
    )


def _key_bytes(key: Any) -> bytes:
    key = _val(key)
    if isinstance(key, str):
        return key.encode("ascii", "replace")
    return bytes(key)


def _lookup(descriptor: Any, *names: bytes) -> Any:
    for key, value in descriptor.items():
        if _key_bytes(key).strip() in names:
            return value
    raise KeyError(names[0])


def _slices_from_descriptor(descriptor: Any) -> list[SliceInfo]:
    """Read slices stored as a version 7 or 8 descriptor."""
    slices = []
    for item in _lookup(descriptor, b"slices"):
        bounds = _lookup(item, b"bounds")
        left = int(_val(_lookup(bounds, b"Left")))
        top = int(_val(_lookup(bounds, b"Top")))
        right = int(_val(_lookup(bounds, b"Rght")))
        bottom = int(_val(_lookup(bounds, b"Btom")))
        try:
            name = str(_val(_lookup(item, b"Nm", b"name")))
        except KeyError:
            name = ""
        slices.append(
            SliceInfo(
                id=int(_val(_lookup(item, b"sliceID"))),
                name=name,
                rect=Rect.from_bbox((left, top, right, bottom)),
            )
        )
    return slices


def open_document(path: Union[str, os.PathLike]) -> PSDDocument:
    """
    Open a PSD or PSB document.

    :param path: document location.
    :return: :py:class:`PSDDocument`.
    :raise DecodeError: if the file cannot be read or decoded.
    """
    try:
        psdimage = PSDImage.open(path)
    except Exception as e:
        raise DecodeError("Failed to open %s: %s" % (path, e)) from e
    logger.debug("Opened %s: %dx%d", path, psdimage.width, psdimage.height)
    return PSDDocument(psdimage)
