import logging
from pathlib import Path
from typing import Any, Iterator

import pytest

from psd_export.constants import ProcessingMode, ProjectStatus, RecordKind
from psd_export.exceptions import ProjectNotFoundError, StoreError
from psd_export.models import LayerRecord, Project
from psd_export.store import MemoryStore, SQLiteStore

logger = logging.getLogger(__name__)


@pytest.fixture(params=["memory", "sqlite", "sqlite-memory"])
def any_store(request: Any, tmp_path: Path) -> Iterator[Any]:
    if request.param == "memory":
        yield MemoryStore()
    elif request.param == "sqlite":
        with SQLiteStore(tmp_path / "db" / "test.sqlite3") as store:
            yield store
    else:
        with SQLiteStore(":memory:") as store:
            yield store


def make_layer(project_id: int, name: str, **kwargs: Any) -> LayerRecord:
    kwargs.setdefault("layer_type", RecordKind.LAYER)
    return LayerRecord(
        project_id=project_id, resource_id="node_" + name, name=name, **kwargs
    )


def test_project_roundtrip(any_store: Any) -> None:
    project = any_store.create_project(
        Project(
            name="design",
            psd_path="/tmp/design.psd",
            export_scales=["1x", "2x"],
            processing_mode="aggressive",
        )
    )
    assert project.id is not None

    loaded = any_store.get_project(project.id)
    assert loaded.name == "design"
    assert loaded.export_scales == ["1x", "2x"]
    assert loaded.processing_mode == ProcessingMode.AGGRESSIVE
    assert loaded.status == ProjectStatus.PENDING
    assert loaded.processing_started_at is None


def test_save_project(any_store: Any) -> None:
    project = any_store.create_project(Project(name="p", psd_path="p.psd"))
    project.mark_processing()
    project.width, project.height = 640, 480
    any_store.save_project(project)

    loaded = any_store.get_project(project.id)
    assert loaded.status == ProjectStatus.PROCESSING
    assert (loaded.width, loaded.height) == (640, 480)
    assert loaded.processing_started_at == project.processing_started_at


def test_get_missing_project(any_store: Any) -> None:
    with pytest.raises(ProjectNotFoundError):
        any_store.get_project(99)


def test_save_missing_project(any_store: Any) -> None:
    with pytest.raises(ProjectNotFoundError):
        any_store.save_project(Project(name="p", psd_path="p.psd", id=99))


def test_list_projects(any_store: Any) -> None:
    first = any_store.create_project(Project(name="a", psd_path="a.psd"))
    second = any_store.create_project(Project(name="b", psd_path="b.psd"))
    ids = [p.id for p in any_store.list_projects()]
    assert set(ids) == {first.id, second.id}


def test_layers(any_store: Any) -> None:
    project = any_store.create_project(Project(name="p", psd_path="p.psd"))
    group = any_store.create_layer(
        make_layer(project.id, "Header", layer_type=RecordKind.GROUP)
    )
    child = any_store.create_layer(
        make_layer(
            project.id,
            "Title text",
            layer_type=RecordKind.TEXT,
            parent_id=group.id,
            content="Hello",
            metadata={"fonts": ["Arial"], "font_sizes": [12.0]},
            hidden=True,
        )
    )
    any_store.create_layer(make_layer(project.id, "Background"))

    layers = any_store.list_layers(project.id)
    assert [r.name for r in layers] == ["Header", "Title text", "Background"]
    loaded = layers[1]
    assert loaded.id == child.id
    assert loaded.parent_id == group.id
    assert loaded.layer_type == RecordKind.TEXT
    assert loaded.metadata == {"fonts": ["Arial"], "font_sizes": [12.0]}
    assert loaded.hidden
    assert loaded.content == "Hello"


def test_list_layers_filters(any_store: Any) -> None:
    project = any_store.create_project(Project(name="p", psd_path="p.psd"))
    any_store.create_layer(make_layer(project.id, "Title", layer_type="text"))
    any_store.create_layer(make_layer(project.id, "Subtitle", layer_type="text"))
    any_store.create_layer(make_layer(project.id, "Background"))

    texts = any_store.list_layers(project.id, layer_type="text")
    assert [r.name for r in texts] == ["Title", "Subtitle"]
    assert [r.name for r in any_store.list_layers(project.id, query="title")] == [
        "Title",
        "Subtitle",
    ]
    assert [
        r.name
        for r in any_store.list_layers(project.id, layer_type=RecordKind.LAYER, query="back")
    ] == ["Background"]


def test_missing_parent(any_store: Any) -> None:
    project = any_store.create_project(Project(name="p", psd_path="p.psd"))
    with pytest.raises(StoreError):
        any_store.create_layer(make_layer(project.id, "orphan", parent_id=1234))


def test_get_layers(any_store: Any) -> None:
    project = any_store.create_project(Project(name="p", psd_path="p.psd"))
    a = any_store.create_layer(make_layer(project.id, "a"))
    any_store.create_layer(make_layer(project.id, "b"))
    c = any_store.create_layer(make_layer(project.id, "c"))
    assert [r.name for r in any_store.get_layers([c.id, a.id])] == ["a", "c"]
    assert any_store.get_layers([]) == []


def test_delete_layers(any_store: Any) -> None:
    project = any_store.create_project(Project(name="p", psd_path="p.psd"))
    other = any_store.create_project(Project(name="o", psd_path="o.psd"))
    group = any_store.create_layer(make_layer(project.id, "g", layer_type="group"))
    any_store.create_layer(make_layer(project.id, "a", parent_id=group.id))
    any_store.create_layer(make_layer(other.id, "b"))

    assert any_store.delete_layers(project.id) == 2
    assert any_store.list_layers(project.id) == []
    assert len(any_store.list_layers(other.id)) == 1


def test_delete_project(any_store: Any) -> None:
    project = any_store.create_project(Project(name="p", psd_path="p.psd"))
    any_store.create_layer(make_layer(project.id, "a"))
    any_store.delete_project(project.id)

    with pytest.raises(ProjectNotFoundError):
        any_store.get_project(project.id)
    assert any_store.list_layers(project.id) == []
    with pytest.raises(ProjectNotFoundError):
        any_store.delete_project(project.id)


def test_sqlite_persists(tmp_path: Path) -> None:
    path = tmp_path / "test.sqlite3"
    with SQLiteStore(path) as store:
        project = store.create_project(Project(name="p", psd_path="p.psd"))
        store.create_layer(make_layer(project.id, "a", metadata={"scales": ["1x"]}))

    with SQLiteStore(path) as store:
        (record,) = store.list_layers(project.id)
        assert record.metadata == {"scales": ["1x"]}
