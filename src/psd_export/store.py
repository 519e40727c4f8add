"""
Persistence of projects and layer records.

The exporter talks to a :py:class:`Store`, injected at construction. Two
implementations are provided:

- :py:class:`MemoryStore`: process-local dictionaries, for tests and one-shot
  command line runs.
- :py:class:`SQLiteStore`: a :py:mod:`sqlite3` database with a ``projects``
  and a ``layers`` table. ``layers.parent_id`` references ``layers.id`` and
  deleting a project cascades to its layers.

Both serialize writes with a lock and both reject a layer whose parent does
not exist yet, so records must be created parent first.
"""

import contextlib
import datetime
import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Iterable, Iterator, Optional, Protocol, Union

from attrs import evolve

from psd_export.constants import RecordKind
from psd_export.exceptions import ProjectNotFoundError, StoreError
from psd_export.models import LayerRecord, Project

try:
    from typing import Self  # type: ignore[attr-defined]
except ImportError:
    from typing_extensions import Self

logger = logging.getLogger(__name__)


class Store(Protocol):
    """Protocol of the persistence collaborator."""

    def create_project(self, project: Project) -> Project:
        """Insert a project and return it with its id assigned."""
        ...

    def get_project(self, project_id: int) -> Project:
        """Return the project or raise :py:class:`ProjectNotFoundError`."""
        ...

    def save_project(self, project: Project) -> None:
        """Update an existing project."""
        ...

    def list_projects(self) -> list[Project]:
        """All projects, newest first."""
        ...

    def delete_project(self, project_id: int) -> None:
        """Delete a project and its layers."""
        ...

    def create_layer(self, record: LayerRecord) -> LayerRecord:
        """Insert a layer record and return it with its id assigned."""
        ...

    def list_layers(
        self,
        project_id: int,
        layer_type: Optional[Union[str, RecordKind]] = None,
        query: Optional[str] = None,
    ) -> list[LayerRecord]:
        """Layers of a project in insertion order, optionally filtered."""
        ...

    def get_layers(self, layer_ids: Iterable[int]) -> list[LayerRecord]:
        """Layers with the given ids."""
        ...

    def delete_layers(self, project_id: int) -> int:
        """Delete all layers of a project and return how many were deleted."""
        ...


def _matches(
    record: LayerRecord,
    layer_type: Optional[Union[str, RecordKind]],
    query: Optional[str],
) -> bool:
    if layer_type and record.layer_type != RecordKind(layer_type):
        return False
    if query and query.lower() not in record.name.lower():
        return False
    return True


class MemoryStore:
    """In-memory :py:class:`Store`."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._projects: dict[int, Project] = {}
        self._layers: dict[int, LayerRecord] = {}
        self._next_project_id = 1
        self._next_layer_id = 1

    def create_project(self, project: Project) -> Project:
        with self._lock:
            project = evolve(project, id=self._next_project_id)
            self._next_project_id += 1
            self._projects[project.id] = project
            return evolve(project)

    def get_project(self, project_id: int) -> Project:
        with self._lock:
            try:
                return evolve(self._projects[project_id])
            except KeyError:
                raise ProjectNotFoundError(project_id) from None

    def save_project(self, project: Project) -> None:
        with self._lock:
            if project.id not in self._projects:
                raise ProjectNotFoundError(project.id)
            self._projects[project.id] = evolve(project)

    def list_projects(self) -> list[Project]:
        with self._lock:
            projects = [evolve(p) for p in self._projects.values()]
        return sorted(projects, key=lambda p: p.created_at, reverse=True)

    def delete_project(self, project_id: int) -> None:
        with self._lock:
            if self._projects.pop(project_id, None) is None:
                raise ProjectNotFoundError(project_id)
            self._delete_layers(project_id)

    def create_layer(self, record: LayerRecord) -> LayerRecord:
        with self._lock:
            if record.project_id not in self._projects:
                raise StoreError("Unknown project %s" % record.project_id)
            if record.parent_id is not None and record.parent_id not in self._layers:
                raise StoreError("Unknown parent layer %s" % record.parent_id)
            record = evolve(
                record, id=self._next_layer_id, metadata=dict(record.metadata)
            )
            self._next_layer_id += 1
            self._layers[record.id] = record
            return evolve(record)

    def list_layers(self, project_id, layer_type=None, query=None):
        with self._lock:
            return [
                evolve(r)
                for r in self._layers.values()
                if r.project_id == project_id and _matches(r, layer_type, query)
            ]

    def get_layers(self, layer_ids):
        wanted = set(layer_ids)
        with self._lock:
            return [evolve(r) for r in self._layers.values() if r.id in wanted]

    def delete_layers(self, project_id: int) -> int:
        with self._lock:
            return self._delete_layers(project_id)

    def _delete_layers(self, project_id: int) -> int:
        ids = [i for i, r in self._layers.items() if r.project_id == project_id]
        for i in ids:
            del self._layers[i]
        return len(ids)


_SCHEMA = """
CREATE TABLE IF NOT EXISTS projects (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    psd_path TEXT NOT NULL,
    export_path TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL DEFAULT 'pending',
    export_scales TEXT NOT NULL DEFAULT '[]',
    width INTEGER NOT NULL DEFAULT 0,
    height INTEGER NOT NULL DEFAULT 0,
    processing_mode TEXT NOT NULL DEFAULT 'normal',
    processing_started_at TEXT,
    processing_finished_at TEXT,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS layers (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id INTEGER NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    resource_id TEXT NOT NULL,
    name TEXT NOT NULL,
    layer_type TEXT NOT NULL,
    x INTEGER NOT NULL DEFAULT 0,
    y INTEGER NOT NULL DEFAULT 0,
    width INTEGER NOT NULL DEFAULT 0,
    height INTEGER NOT NULL DEFAULT 0,
    content TEXT NOT NULL DEFAULT '',
    image_path TEXT NOT NULL DEFAULT '',
    metadata TEXT NOT NULL DEFAULT '{}',
    parent_id INTEGER REFERENCES layers(id) ON DELETE CASCADE,
    hidden INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_layers_project_id ON layers(project_id);
CREATE INDEX IF NOT EXISTS idx_layers_layer_type ON layers(layer_type);
"""

_PROJECT_COLUMNS = (
    "name, psd_path, export_path, status, export_scales, width, height, "
    "processing_mode, processing_started_at, processing_finished_at, created_at"
)
_LAYER_COLUMNS = (
    "project_id, resource_id, name, layer_type, x, y, width, height, content, "
    "image_path, metadata, parent_id, hidden, created_at"
)


def _dump_time(value: Optional[datetime.datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _load_time(value: Optional[str]) -> Optional[datetime.datetime]:
    if not value:
        return None
    try:
        return datetime.datetime.fromisoformat(value)
    except ValueError:
        logger.debug("Invalid timestamp %r", value)
        return None


class SQLiteStore:
    """
    :py:class:`Store` backed by a sqlite3 database file.

    A connection is opened per operation; the lock keeps writers from
    interleaving within the process.

    Usage::

        with SQLiteStore('db/psd_export.sqlite3') as store:
            project = store.create_project(Project(name='a', psd_path='a.psd'))
    """

    def __init__(self, db_path: Union[str, Path], busy_timeout_ms: int = 5000):
        self._path = Path(db_path)
        self._busy_timeout_ms = int(busy_timeout_ms)
        self._lock = threading.RLock()
        if str(self._path) != ":memory:":
            self._path.parent.mkdir(parents=True, exist_ok=True)
        self._shared: Optional[sqlite3.Connection] = None
        if str(self._path) == ":memory:":
            # An in-memory database lives as long as its connection.
            self._shared = self._open_conn()
        with self._connect() as conn:
            conn.executescript(_SCHEMA)

    def __enter__(self) -> Self:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        if self._shared is not None:
            self._shared.close()
            self._shared = None

    def _open_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._path), check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute("PRAGMA busy_timeout = %d" % self._busy_timeout_ms)
        return conn

    @contextlib.contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = self._shared if self._shared is not None else self._open_conn()
            try:
                yield conn
                conn.commit()
            except sqlite3.IntegrityError as e:
                conn.rollback()
                raise StoreError("Constraint violated: %s" % e) from e
            except sqlite3.Error as e:
                conn.rollback()
                raise StoreError(str(e)) from e
            except Exception:
                conn.rollback()
                raise
            finally:
                if conn is not self._shared:
                    conn.close()

    @staticmethod
    def _project_values(project: Project) -> tuple:
        return (
            project.name,
            project.psd_path,
            project.export_path,
            project.status.value,
            json.dumps(list(project.export_scales)),
            project.width,
            project.height,
            project.processing_mode.value,
            _dump_time(project.processing_started_at),
            _dump_time(project.processing_finished_at),
            _dump_time(project.created_at),
        )

    @staticmethod
    def _row_to_project(row: sqlite3.Row) -> Project:
        return Project(
            id=row["id"],
            name=row["name"],
            psd_path=row["psd_path"],
            export_path=row["export_path"],
            status=row["status"],
            export_scales=json.loads(row["export_scales"] or "[]"),
            width=row["width"],
            height=row["height"],
            processing_mode=row["processing_mode"],
            processing_started_at=_load_time(row["processing_started_at"]),
            processing_finished_at=_load_time(row["processing_finished_at"]),
            created_at=_load_time(row["created_at"]),
        )

    @staticmethod
    def _row_to_layer(row: sqlite3.Row) -> LayerRecord:
        return LayerRecord(
            id=row["id"],
            project_id=row["project_id"],
            resource_id=row["resource_id"],
            name=row["name"],
            layer_type=row["layer_type"],
            x=row["x"],
            y=row["y"],
            width=row["width"],
            height=row["height"],
            content=row["content"],
            image_path=row["image_path"],
            metadata=json.loads(row["metadata"] or "{}"),
            parent_id=row["parent_id"],
            hidden=bool(row["hidden"]),
            created_at=_load_time(row["created_at"]),
        )

    def create_project(self, project: Project) -> Project:
        with self._connect() as conn:
            cursor = conn.execute(
                "INSERT INTO projects (%s) VALUES (%s)"
                % (_PROJECT_COLUMNS, ", ".join("?" * 11)),
                self._project_values(project),
            )
            return evolve(project, id=cursor.lastrowid)

    def get_project(self, project_id: int) -> Project:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM projects WHERE id = ?", (project_id,)
            ).fetchone()
        if row is None:
            raise ProjectNotFoundError(project_id)
        return self._row_to_project(row)

    def save_project(self, project: Project) -> None:
        assignments = ", ".join(
            "%s = ?" % column.strip() for column in _PROJECT_COLUMNS.split(",")
        )
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE projects SET %s WHERE id = ?" % assignments,
                self._project_values(project) + (project.id,),
            )
            if cursor.rowcount == 0:
                raise ProjectNotFoundError(project.id)

    def list_projects(self) -> list[Project]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM projects ORDER BY created_at DESC, id DESC"
            ).fetchall()
        return [self._row_to_project(row) for row in rows]

    def delete_project(self, project_id: int) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM layers WHERE project_id = ?", (project_id,))
            cursor = conn.execute("DELETE FROM projects WHERE id = ?", (project_id,))
            if cursor.rowcount == 0:
                raise ProjectNotFoundError(project_id)

    def create_layer(self, record: LayerRecord) -> LayerRecord:
        values = (
            record.project_id,
            record.resource_id,
            record.name,
            record.layer_type.value,
            record.x,
            record.y,
            record.width,
            record.height,
            record.content,
            record.image_path,
            json.dumps(record.metadata, ensure_ascii=False, default=str),
            record.parent_id,
            int(record.hidden),
            _dump_time(record.created_at),
        )
        with self._connect() as conn:
            cursor = conn.execute(
                "INSERT INTO layers (%s) VALUES (%s)"
                % (_LAYER_COLUMNS, ", ".join("?" * len(values))),
                values,
            )
            return evolve(record, id=cursor.lastrowid)

    def list_layers(self, project_id, layer_type=None, query=None):
        sql = "SELECT * FROM layers WHERE project_id = ?"
        params: list = [project_id]
        if layer_type:
            sql += " AND layer_type = ?"
            params.append(RecordKind(layer_type).value)
        if query:
            sql += " AND name LIKE ?"
            params.append("%" + query + "%")
        with self._connect() as conn:
            rows = conn.execute(sql + " ORDER BY id", params).fetchall()
        return [self._row_to_layer(row) for row in rows]

    def get_layers(self, layer_ids):
        ids = list(layer_ids)
        if not ids:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM layers WHERE id IN (%s) ORDER BY id"
                % ", ".join("?" * len(ids)),
                ids,
            ).fetchall()
        return [self._row_to_layer(row) for row in rows]

    def delete_layers(self, project_id: int) -> int:
        with self._connect() as conn:
            # Rows removed by the parent_id cascade are not counted by rowcount.
            (count,) = conn.execute(
                "SELECT COUNT(*) FROM layers WHERE project_id = ?", (project_id,)
            ).fetchone()
            conn.execute("DELETE FROM layers WHERE project_id = ?", (project_id,))
            return count
