"""
Project lifecycle operations.

:py:class:`ProjectService` ties the store, the task runner and the processor
together: it creates projects, starts and stops their background export,
deletes them with their files, and copies exported layers to the project's
export directory.
"""

import datetime
import logging
import os
import shutil
from pathlib import Path
from typing import Iterable, Mapping, Optional, Sequence, Union

from psd_export import geometry
from psd_export.config import Config
from psd_export.constants import BASE_SCALE, DOCUMENT_EXTENSIONS, ProjectStatus
from psd_export.exceptions import InvalidProjectError
from psd_export.models import LayerRecord, Project
from psd_export.processor import ProjectProcessor
from psd_export.store import Store
from psd_export.tasks import TaskHandle, TaskRunner

logger = logging.getLogger(__name__)


class ProjectService:
    """
    Facade over projects and their export jobs.

    :param store: :py:class:`~psd_export.store.Store`.
    :param config: :py:class:`~psd_export.config.Config`.
    :param runner: :py:class:`~psd_export.tasks.TaskRunner`, a new one by
        default.
    :param processor: :py:class:`~psd_export.processor.ProjectProcessor`, a
        new one sharing ``store`` and ``config`` by default.
    """

    def __init__(
        self,
        store: Store,
        config: Optional[Config] = None,
        runner: Optional[TaskRunner] = None,
        processor: Optional[ProjectProcessor] = None,
    ):
        self.store = store
        self.config = config or Config()
        self.runner = runner or TaskRunner()
        self.processor = processor or ProjectProcessor(store, self.config)

    def create_project(
        self,
        psd_path: Union[str, os.PathLike],
        name: Optional[str] = None,
        export_path: Optional[Union[str, os.PathLike]] = None,
        export_scales: Optional[Sequence[str]] = None,
        processing_mode: Optional[str] = None,
        start: bool = True,
    ) -> Project:
        """
        Register a document and optionally start its export.

        :param psd_path: location of the ``.psd`` or ``.psb`` document.
        :param name: project name, the document file name by default.
        :param export_path: destination of :py:meth:`export_layers`. Relative
            paths are resolved against the working directory; the default is
            a timestamped directory below ``config.exports_path``.
        :param export_scales: scale factors such as ``["1x", "2x"]``.
        :param processing_mode: ``"normal"`` or ``"aggressive"``.
        :param start: start the background export right away.
        :return: the created :py:class:`~psd_export.models.Project`.
        :raise InvalidProjectError: if the extension or a scale is invalid.
        """
        psd_path = Path(psd_path)
        if psd_path.suffix.lower() not in DOCUMENT_EXTENSIONS:
            raise InvalidProjectError(
                "Only PSD and PSB files are supported: %s" % psd_path.name
            )

        scales = list(export_scales or self.config.default_scales or [BASE_SCALE])
        for scale in scales:
            try:
                geometry.parse_scale(scale)
            except ValueError as e:
                raise InvalidProjectError(str(e)) from e

        if not export_path:
            stamp = int(datetime.datetime.now().timestamp())
            export_path = self.config.exports_path / str(stamp)
        export_path = Path(export_path)
        if not export_path.is_absolute():
            export_path = Path.cwd() / export_path

        project = self.store.create_project(
            Project(
                name=name or psd_path.name,
                psd_path=str(psd_path),
                export_path=str(export_path),
                export_scales=scales,
                processing_mode=processing_mode,
            )
        )
        logger.info("Created project %s: %s", project.id, project.name)
        if start:
            self.start_processing(project.id)
        return project

    def start_processing(self, project_id: int) -> TaskHandle:
        """Start, or restart, the export job of the project."""
        self.store.get_project(project_id)
        return self.runner.start(
            project_id, lambda token: self.processor.run(project_id, token)
        )

    def process_project(self, project_id: int) -> TaskHandle:
        """
        Start the export of a pending project.

        :raise InvalidProjectError: if the project is not pending.
        """
        project = self.store.get_project(project_id)
        if project.status != ProjectStatus.PENDING:
            raise InvalidProjectError(
                "Cannot process project with status: %s" % project.status.value
            )
        return self.start_processing(project_id)

    def wait(self, project_id: int, timeout: Optional[float] = None) -> Project:
        """Wait for the export job of the project and return the project."""
        if not self.runner.wait(project_id, timeout):
            logger.warning("Project %s is still processing", project_id)
        return self.store.get_project(project_id)

    def stop_processing(
        self, project_id: int, timeout: Optional[float] = None
    ) -> Project:
        """
        Stop a running export and discard its output.

        The job is cancelled and waited for, then the processed files and the
        layer records are removed and the project goes back to pending.

        :raise InvalidProjectError: if the project is not processing or has
            no running job.
        """
        project = self.store.get_project(project_id)
        if project.status != ProjectStatus.PROCESSING:
            raise InvalidProjectError(
                "Cannot stop project with status: %s" % project.status.value
            )
        if not self.runner.stop(project_id, timeout):
            raise InvalidProjectError("No running task for project %s" % project_id)

        self._remove_layer_files(self.store.list_layers(project_id))
        _remove_tree(self.config.processed_dir(project_id))

        project = self.store.get_project(project_id)
        project.mark_pending()
        self.store.save_project(project)
        deleted = self.store.delete_layers(project_id)
        logger.info("Stopped project %s, removed %d layers", project_id, deleted)
        return project

    def delete_project(self, project_id: int) -> None:
        """
        Delete a project with its layers and files.

        The document itself is removed only when it lives in the uploads
        directory.
        """
        project = self.store.get_project(project_id)
        self.runner.stop(project_id)
        self.store.delete_layers(project_id)

        psd_path = Path(project.psd_path)
        if _is_relative_to(psd_path, self.config.uploads_path) and psd_path.is_file():
            psd_path.unlink()
        if project.export_path:
            _remove_tree(Path(project.export_path))
        _remove_tree(self.config.processed_dir(project_id))

        self.store.delete_project(project_id)
        logger.info("Deleted project %s", project_id)

    def list_layers(
        self,
        project_id: int,
        layer_type: Optional[str] = None,
        query: Optional[str] = None,
    ) -> list[LayerRecord]:
        """Layers of the project, filtered by type and name substring."""
        self.store.get_project(project_id)
        return self.store.list_layers(project_id, layer_type=layer_type, query=query)

    def export_layers(
        self,
        project_id: int,
        layer_ids: Iterable[int],
        renames: Optional[Mapping[Union[int, str], str]] = None,
        scales: Optional[Sequence[str]] = None,
        clear_directory: bool = False,
    ) -> tuple[int, str]:
        """
        Copy exported layer images to the project's export directory.

        Files are named after the layer, or after its entry in ``renames``.
        Name collisions get ``_1``, ``_2``, ... suffixes. Scale variants that
        were never produced are skipped.

        :param project_id: id of the project.
        :param layer_ids: ids of the layers to copy.
        :param renames: mapping of layer id to target name.
        :param scales: scale variants to copy, ``["1x"]`` by default.
        :param clear_directory: empty the export directory first.
        :return: ``(number of copied files, export directory)``.
        :raise InvalidProjectError: if none of the layers exists.
        """
        project = self.store.get_project(project_id)
        renames = {str(k): v for k, v in (renames or {}).items()}
        layers = [
            layer
            for layer in self.store.get_layers(layer_ids)
            if layer.project_id == project_id
        ]
        if not layers:
            raise InvalidProjectError("No valid layers found")

        export_dir = Path(project.export_path)
        if clear_directory:
            _remove_tree(export_dir)
        export_dir.mkdir(parents=True, exist_ok=True)

        scales = list(scales or [BASE_SCALE])
        used: set[str] = set()
        count = 0
        for layer in layers:
            if not layer.image_path:
                continue
            base_name = geometry.sanitize_filename(
                renames.get(str(layer.id)) or layer.name,
                self.config.max_name_length,
            )
            source = self.config.resolve(layer.image_path)
            for scale in scales:
                variant = _variant_path(source, scale)
                if not variant.is_file():
                    logger.debug("Missing %s variant of %s", scale, layer.name)
                    continue
                target = _free_name(base_name, scale, source.suffix, used)
                used.add(target)
                try:
                    shutil.copyfile(variant, export_dir / target)
                except OSError as e:
                    logger.warning("Failed to copy %s: %s", variant, e)
                    continue
                count += 1
        logger.info("Exported %d files to %s", count, export_dir)
        return count, str(export_dir)

    def shutdown(self) -> None:
        self.runner.shutdown()

    def _remove_layer_files(self, layers: Iterable[LayerRecord]) -> None:
        for layer in layers:
            paths = [layer.image_path, layer.metadata.get("image_path_no_text", "")]
            for path in filter(None, paths):
                source = self.config.resolve(path)
                for scale in layer.metadata.get("scales", [BASE_SCALE]):
                    variant = _variant_path(source, scale)
                    try:
                        variant.unlink()
                    except FileNotFoundError:
                        pass


def _free_name(base_name: str, scale: str, ext: str, used: set[str]) -> str:
    suffix = "" if scale == BASE_SCALE else "@" + scale
    name = base_name + suffix + ext
    counter = 1
    while name in used:
        name = "%s_%d%s%s" % (base_name, counter, suffix, ext)
        counter += 1
    return name


def _remove_tree(path: Path) -> None:
    if path.is_dir():
        shutil.rmtree(path)
        logger.debug("Removed %s", path)


def _is_relative_to(path: Path, parent: Path) -> bool:
    try:
        path.resolve().relative_to(parent.resolve())
    except ValueError:
        return False
    return True


def _variant_path(source: Path, scale: str) -> Path:
    return source.with_name(geometry.scaled_filename(source.name, scale))
