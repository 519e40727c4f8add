"""
Processing of a single project.

:py:class:`ProjectProcessor` is the body of a background job: it opens the
project's document, records the canvas size, writes the full preview, exports
the declared slices and finally walks the layer tree through
:py:class:`~psd_export.exporter.LayerExporter`.

Cancellation is polled between the steps and before every slice and node.
A cancelled job leaves the project status untouched; the caller that asked
for the cancellation owns the cleanup.
"""

import logging
from typing import Callable, Optional

from PIL import Image

from psd_export import geometry
from psd_export.config import Config
from psd_export.constants import RecordKind
from psd_export.document import DocumentProtocol, open_document
from psd_export.exceptions import Cancelled, DecodeError, ExportError
from psd_export.exporter import LayerExporter
from psd_export.models import LayerRecord, Project, Rect
from psd_export.store import Store
from psd_export.tasks import CancelToken

logger = logging.getLogger(__name__)

Opener = Callable[[str], DocumentProtocol]


class ProjectProcessor:
    """
    Export pipeline of one project.

    :param store: :py:class:`~psd_export.store.Store` holding the project.
    :param config: :py:class:`~psd_export.config.Config`.
    :param opener: callable returning a
        :py:class:`~psd_export.document.DocumentProtocol` for a path,
        :py:func:`~psd_export.document.open_document` by default.
    """

    def __init__(
        self,
        store: Store,
        config: Optional[Config] = None,
        opener: Optional[Opener] = None,
    ):
        self._store = store
        self._config = config or Config()
        self._opener = opener or open_document

    def __call__(self, project_id: int, token: CancelToken) -> Project:
        return self.run(project_id, token)

    def run(self, project_id: int, token: Optional[CancelToken] = None) -> Project:
        """
        Process the project.

        :param project_id: id of the project.
        :param token: :py:class:`~psd_export.tasks.CancelToken`; a fresh token
            is used when omitted.
        :return: the project in its final state.
        :raise ProjectNotFoundError: if the project does not exist.
        :raise DecodeError: if the document cannot be opened; the project is
            marked as failed.
        :raise Cancelled: if the token is cancelled.
        """
        token = token or CancelToken()
        project = self._store.get_project(project_id)
        project.mark_processing()
        self._store.save_project(project)
        logger.info("Processing project %s: %s", project.id, project.psd_path)

        try:
            count = self._process(project, token)
        except Cancelled:
            logger.info("Processing of project %s cancelled", project.id)
            raise
        except Exception:
            logger.error("Processing of project %s failed", project.id)
            project.mark_error()
            self._save_quietly(project)
            raise

        project.mark_ready()
        self._store.save_project(project)
        logger.info("Finished project %s: %d items", project.id, count)
        return project

    def _process(self, project: Project, token: CancelToken) -> int:
        token.raise_if_cancelled()
        try:
            document = self._opener(project.psd_path)
        except DecodeError:
            raise
        except Exception as e:
            raise DecodeError("Failed to open %s: %s" % (project.psd_path, e)) from e

        project.width, project.height = document.header()
        self._store.save_project(project)
        logger.info("Canvas size: %d x %d px", project.width, project.height)

        token.raise_if_cancelled()
        image = self._flatten(document)
        if image is not None:
            self._export_preview(project, image)

        token.raise_if_cancelled()
        count = 0
        if image is not None:
            count += self._export_slices(project, document, image, token)

        token.raise_if_cancelled()
        exporter = LayerExporter(self._store, project, self._config)
        count += exporter.export(document.tree(), token)
        return count

    @staticmethod
    def _flatten(document: DocumentProtocol) -> Optional[Image.Image]:
        try:
            return document.flattened_image()
        except ExportError as e:
            logger.warning("Failed to flatten document: %s", e)
            return None

    def _export_preview(self, project: Project, image: Image.Image) -> Optional[str]:
        try:
            filename = geometry.save_preview(
                image,
                self._config.processed_dir(project.id),
                quality=self._config.preview_quality,
            )
        except ExportError as e:
            logger.warning("Failed to export preview: %s", e)
            return None
        logger.info("Exported preview %s", filename)
        return filename

    def _export_slices(
        self,
        project: Project,
        document: DocumentProtocol,
        image: Image.Image,
        token: CancelToken,
    ) -> int:
        slices = document.slices()
        if not slices:
            return 0
        logger.info("Found %d slices", len(slices))

        count = 0
        for info in slices:
            token.raise_if_cancelled()
            rect = Rect.from_bbox(
                geometry.intersect(info.rect.bbox, (0, 0, image.width, image.height))
            )
            if rect.is_empty():
                logger.info("Skipped slice %d: empty bounds", info.id)
                continue
            try:
                cropped = image.crop(rect.bbox)
                saved = geometry.save_scaled_variants(
                    cropped,
                    self._config.processed_dir(project.id),
                    geometry.slice_filename(project.id, info.id),
                    project.export_scales,
                )
                self._store.create_layer(
                    LayerRecord(
                        project_id=project.id,
                        resource_id="slice_%d" % info.id,
                        name=info.display_name,
                        layer_type=RecordKind.SLICE,
                        x=rect.x,
                        y=rect.y,
                        width=rect.width,
                        height=rect.height,
                        image_path=self._config.relative_path(project.id, saved),
                        metadata={"scales": list(project.export_scales)},
                    )
                )
            except ExportError as e:
                logger.error("Failed to export slice %d: %s", info.id, e)
                continue
            count += 1
            logger.info(
                "Exported slice %s (%dx%d)", info.display_name, rect.width, rect.height
            )
        return count

    def _save_quietly(self, project: Project) -> None:
        try:
            self._store.save_project(project)
        except ExportError as e:
            logger.error("Failed to save status of project %s: %s", project.id, e)


def process_project(
    store: Store,
    project_id: int,
    config: Optional[Config] = None,
    token: Optional[CancelToken] = None,
) -> Project:
    """Shortcut running :py:class:`ProjectProcessor` synchronously."""
    return ProjectProcessor(store, config).run(project_id, token)


__all__ = ["ProjectProcessor", "process_project"]
