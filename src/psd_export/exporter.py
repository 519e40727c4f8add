"""
Layer tree export.

:py:class:`LayerExporter` walks a document tree depth-first in pre-order and,
for every node, renders the node, clips it to the canvas, optionally trims
transparent borders, saves the scale variants, and persists a
:py:class:`~psd_export.models.LayerRecord`. Parents are always persisted
before their children so that ``parent_id`` references an existing record.

Groups are handled differently from other nodes:

- a group with empty bounds, or whose render fails, is persisted as a
  placeholder record without image;
- a group is exported twice, with and without its text layers, and both
  variants share the same geometry;
- a dropped group does not drop its children, which attach to the nearest
  exported ancestor.

Example::

    exporter = LayerExporter(store, project, config)
    count = exporter.export(document.tree(), token)
"""

import logging
from pathlib import Path
from typing import Optional

from PIL import Image

from psd_export import geometry
from psd_export.config import Config
from psd_export.constants import NodeKind, RecordKind
from psd_export.document import NodeProtocol
from psd_export.exceptions import (
    ExportError,
    OutsideCanvasError,
    RenderError,
    TransparentImageError,
)
from psd_export.models import ExportAttributes, LayerRecord, Project, TransparencyBounds
from psd_export.store import Store
from psd_export.tasks import CancelToken

logger = logging.getLogger(__name__)


class LayerExporter:
    """
    Depth-first exporter of a document tree.

    :param store: :py:class:`~psd_export.store.Store` receiving the records.
    :param project: project being processed. Its ``width`` and ``height``
        must already hold the canvas size.
    :param config: :py:class:`~psd_export.config.Config`.
    """

    def __init__(self, store: Store, project: Project, config: Optional[Config] = None):
        self._store = store
        self._project = project
        self._config = config or Config()
        self.processed_count = 0

    @property
    def output_dir(self) -> Path:
        return self._config.processed_dir(self._project.id)

    @property
    def canvas_size(self) -> tuple[int, int]:
        return self._project.width, self._project.height

    def export(self, root: NodeProtocol, token: CancelToken) -> int:
        """
        Export every descendant of ``root``.

        :param root: root sentinel of the tree, never exported itself.
        :param token: :py:class:`~psd_export.tasks.CancelToken` polled before
            each node.
        :return: number of records created by this call.
        :raise Cancelled: if the token is cancelled during the walk.
        """
        start = self.processed_count
        for child in root.children:
            self._visit(child, None, token)
        return self.processed_count - start

    def _visit(
        self, node: NodeProtocol, parent_id: Optional[int], token: CancelToken
    ) -> None:
        token.raise_if_cancelled()

        kind = self._classify(node)
        attrs = self._attributes(node, kind, parent_id)

        if kind == NodeKind.GROUP:
            record = self._export_group(node, attrs)
            child_parent_id = record.id if record is not None else parent_id
            for child in node.children:
                self._visit(child, child_parent_id, token)
            return

        if attrs.width <= 0 or attrs.height <= 0:
            logger.info(
                "Skipped %r: empty bounds %dx%d", node.name, attrs.width, attrs.height
            )
            return

        if kind == NodeKind.TEXT:
            record = self._export_text(node, attrs)
        else:
            record = self._export_layer(node, attrs)
        if record is None:
            return

        for child in node.children:
            self._visit(child, record.id, token)

    @staticmethod
    def _classify(node: NodeProtocol) -> NodeKind:
        if node.is_text_layer():
            return NodeKind.TEXT
        if node.kind == NodeKind.GROUP:
            return NodeKind.GROUP
        return NodeKind.LAYER

    def _attributes(
        self, node: NodeProtocol, kind: NodeKind, parent_id: Optional[int]
    ) -> ExportAttributes:
        bounds = node.bounds
        return ExportAttributes(
            project_id=self._project.id,
            name=node.name,
            resource_id=node.key,
            kind=RecordKind.from_node_kind(kind),
            x=bounds.x,
            y=bounds.y,
            width=bounds.width,
            height=bounds.height,
            parent_id=parent_id,
            hidden=not node.visible,
            metadata={
                "scales": list(self._project.export_scales),
                "opacity": node.opacity,
                "blend_mode": node.blend_mode,
            },
        )

    def _export_group(
        self, node: NodeProtocol, attrs: ExportAttributes
    ) -> Optional[LayerRecord]:
        if attrs.width <= 0 or attrs.height <= 0:
            logger.info("Group %r has empty bounds, recording placeholder", node.name)
            return self._persist(attrs)

        try:
            image = node.to_raster()
        except RenderError as e:
            logger.warning("Failed to render group %r: %s", node.name, e)
            return self._persist(attrs)

        origin = (attrs.x, attrs.y)
        try:
            image, bounds = self._fit(image, attrs)
        except (OutsideCanvasError, TransparentImageError) as e:
            logger.info("Skipped group %r: %s", node.name, e)
            return None

        try:
            attrs.image_path = self._save(
                image, self._filename("group", node.name, "with_text")
            )
        except ExportError as e:
            logger.error("Failed to save group %r: %s", node.name, e)
            return None

        no_text_path = self._export_group_without_text(node, attrs, origin, bounds)
        if no_text_path:
            attrs.metadata["image_path_no_text"] = no_text_path

        return self._persist(attrs)

    def _export_group_without_text(
        self,
        node: NodeProtocol,
        attrs: ExportAttributes,
        origin: tuple[int, int],
        bounds: Optional[TransparencyBounds],
    ) -> Optional[str]:
        """Save the group rendered without text, cropped like the primary image."""
        try:
            image = node.to_raster_without_text()
            image, x, y = geometry.clip_to_canvas(
                image, origin[0], origin[1], *self.canvas_size
            )
            if bounds is not None:
                image = geometry.trim(image, bounds)
                x, y = x + bounds.min_x, y + bounds.min_y
            if (x, y, image.width, image.height) != (
                attrs.x,
                attrs.y,
                attrs.width,
                attrs.height,
            ):
                logger.info(
                    "Skipped text-free variant of %r: geometry differs", node.name
                )
                return None
            return self._save(image, self._filename("group", node.name, "no_text"))
        except ExportError as e:
            logger.info("Skipped text-free variant of %r: %s", node.name, e)
            return None

    def _export_text(
        self, node: NodeProtocol, attrs: ExportAttributes
    ) -> Optional[LayerRecord]:
        self._attach_text(node, attrs)
        try:
            image = node.to_raster()
        except RenderError as e:
            logger.debug("Falling back to raw pixels for %r: %s", node.name, e)
            try:
                image = node.to_raw_raster()
            except RenderError as e:
                logger.warning("Failed to render text %r: %s", node.name, e)
                return None
        return self._finish(node, attrs, image, "text")

    def _attach_text(self, node: NodeProtocol, attrs: ExportAttributes) -> None:
        """Copy text content and font info onto ``attrs``, best-effort."""
        try:
            content = node.text_content()
            info = node.text_info()
        except Exception as e:
            logger.warning("Failed to read text of %r: %s", node.name, e)
            return
        if content:
            attrs.content = content
            logger.debug("Text of %r: %r", node.name, content)
        if info is not None:
            if info.fonts:
                attrs.metadata["fonts"] = list(info.fonts)
            if info.sizes:
                attrs.metadata["font_sizes"] = list(info.sizes)

    def _export_layer(
        self, node: NodeProtocol, attrs: ExportAttributes
    ) -> Optional[LayerRecord]:
        try:
            image = node.to_raster()
        except RenderError as e:
            logger.warning("Failed to render layer %r: %s", node.name, e)
            return None
        return self._finish(node, attrs, image, "layer")

    def _finish(
        self,
        node: NodeProtocol,
        attrs: ExportAttributes,
        image: Image.Image,
        prefix: str,
    ) -> Optional[LayerRecord]:
        try:
            image, _ = self._fit(image, attrs)
        except (OutsideCanvasError, TransparentImageError) as e:
            logger.info("Skipped %s %r: %s", prefix, node.name, e)
            return None
        try:
            attrs.image_path = self._save(image, self._filename(prefix, node.name))
        except ExportError as e:
            logger.error("Failed to save %s %r: %s", prefix, node.name, e)
            return None
        return self._persist(attrs)

    def _fit(
        self, image: Image.Image, attrs: ExportAttributes
    ) -> tuple[Image.Image, Optional[TransparencyBounds]]:
        """
        Clip to the canvas, then trim in aggressive mode.

        Updates the geometry of ``attrs`` and returns the image together with
        the transparency bounds used for trimming, or None in normal mode.
        """
        image, x, y = geometry.clip_to_canvas(
            image, attrs.x, attrs.y, *self.canvas_size
        )
        attrs.place(x, y, image.size)
        if not self._project.is_aggressive:
            return image, None

        bounds = geometry.analyze_transparency(image)
        trimmed = geometry.trim(image, bounds)
        if trimmed is not image:
            logger.debug(
                "Trimmed %r from %dx%d to %dx%d at (%d, %d)",
                attrs.name,
                attrs.width,
                attrs.height,
                bounds.width,
                bounds.height,
                bounds.min_x,
                bounds.min_y,
            )
            attrs.place(x + bounds.min_x, y + bounds.min_y, trimmed.size)
        return trimmed, bounds

    def _filename(self, prefix: str, name: str, variant: str = "") -> str:
        return geometry.unique_filename(
            prefix, name, variant, max_length=self._config.max_name_length
        )

    def _save(self, image: Image.Image, filename: str) -> str:
        saved = geometry.save_scaled_variants(
            image, self.output_dir, filename, self._project.export_scales
        )
        return self._config.relative_path(self._project.id, saved)

    def _persist(self, attrs: ExportAttributes) -> Optional[LayerRecord]:
        try:
            record = self._store.create_layer(attrs.to_record())
        except ExportError as e:
            logger.error("Failed to record %r: %s", attrs.name, e)
            return None
        self.processed_count += 1
        logger.info(
            "Exported %s %r (%dx%d)",
            attrs.kind.value,
            attrs.name,
            attrs.width,
            attrs.height,
        )
        return record
