"""
psd-export: export PSD/PSB documents as multi-scale raster assets.

A document is turned into a full preview, one image per slice, and one image
per layer, group and text layer, each saved at the requested scale factors.
The layer tree is recorded in a store so that assets can be browsed and
copied out later.

Basic usage::

    from psd_export import MemoryStore, ProjectService

    service = ProjectService(MemoryStore())
    project = service.create_project('design.psd', export_scales=['1x', '2x'])
    project = service.wait(project.id)
    for layer in service.list_layers(project.id, layer_type='text'):
        print(layer.name, layer.content)

Architecture:

- :py:mod:`psd_export.geometry`: clipping, trimming and multi-scale saving
- :py:mod:`psd_export.exporter`: depth-first layer tree export
- :py:mod:`psd_export.processor`: one export job for one project
- :py:mod:`psd_export.tasks`: cancellable background jobs
- :py:mod:`psd_export.document`: psd-tools adapter
- :py:mod:`psd_export.store`: project and layer persistence
"""

from psd_export.config import Config
from psd_export.service import ProjectService
from psd_export.store import MemoryStore, SQLiteStore
from psd_export.version import __version__

__all__ = ["Config", "MemoryStore", "ProjectService", "SQLiteStore", "__version__"]
