"""
Runtime configuration.

Paths and tunables are read from the environment by :py:meth:`Config.from_env`.
The output layout is::

    {public_path}/processed/{project_id}/{file}

and layer records store the part relative to ``public_path``.
"""

import logging
import os
from pathlib import Path
from typing import Mapping, Optional

from attrs import define, field

from psd_export.constants import BASE_SCALE, PROCESSED_DIRNAME

try:
    from typing import Self  # type: ignore[attr-defined]
except ImportError:
    from typing_extensions import Self

logger = logging.getLogger(__name__)


@define
class Config:
    """
    Exporter configuration.

    .. py:attribute:: public_path

        Root of the served assets. Processed images go below
        ``public_path/processed``.

    .. py:attribute:: uploads_path
    .. py:attribute:: exports_path
    .. py:attribute:: db_path
    .. py:attribute:: preview_quality

        Lossy quality of the full preview, in [1, 100].

    .. py:attribute:: max_name_length

        Maximum number of characters of a layer name embedded in a file name.
    """

    public_path: Path = field(default=Path("public"), converter=Path)
    uploads_path: Path = field(default=Path("uploads"), converter=Path)
    exports_path: Path = field(default=Path("exports"), converter=Path)
    db_path: Path = field(default=Path("db/psd_export.sqlite3"), converter=Path)
    preview_quality: int = field(default=75, converter=int)
    max_name_length: int = field(default=50, converter=int)
    default_scales: list[str] = field(factory=lambda: [BASE_SCALE])

    @preview_quality.validator
    def _check_quality(self, attribute, value):
        if not 1 <= value <= 100:
            raise ValueError("preview_quality must be in [1, 100], got %d" % value)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> Self:
        """
        Load configuration from environment variables.

        Recognized variables are ``PUBLIC_PATH``, ``UPLOADS_PATH``,
        ``EXPORTS_PATH``, ``DB_PATH`` and ``PREVIEW_QUALITY``. Unset or empty
        variables keep the defaults.
        """
        environ = os.environ if environ is None else environ
        keys = {
            "public_path": "PUBLIC_PATH",
            "uploads_path": "UPLOADS_PATH",
            "exports_path": "EXPORTS_PATH",
            "db_path": "DB_PATH",
            "preview_quality": "PREVIEW_QUALITY",
        }
        kwargs = {name: environ[key] for name, key in keys.items() if environ.get(key)}
        return cls(**kwargs)

    def ensure_directories(self) -> None:
        """Create the directory layout."""
        for path in (
            self.uploads_path,
            self.public_path / PROCESSED_DIRNAME,
            self.exports_path,
            self.db_path.parent,
        ):
            path.mkdir(parents=True, exist_ok=True)
            logger.debug("Directory ready: %s", path)

    def processed_dir(self, project_id: int) -> Path:
        """Output directory of the given project."""
        return self.public_path / PROCESSED_DIRNAME / str(project_id)

    def relative_path(self, project_id: int, filename: str) -> str:
        """Path stored on records, relative to ``public_path``."""
        return "/".join((PROCESSED_DIRNAME, str(project_id), filename))

    def resolve(self, relative_path: str) -> Path:
        """Absolute location of a path stored on a record."""
        return self.public_path / relative_path
