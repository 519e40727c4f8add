import logging
from pathlib import Path
from types import SimpleNamespace
from typing import Any

import pytest
from PIL import Image
from psd_tools import PSDImage

from psd_export.constants import NodeKind
from psd_export.document import PSDDocument, PSDNode, open_document
from psd_export.exceptions import DecodeError
from psd_export.models import Rect, SliceInfo

logger = logging.getLogger(__name__)


@pytest.fixture
def psd_file(tmp_path: Path) -> Path:
    psdimage = PSDImage.new(mode="RGB", size=(100, 80))
    psdimage.create_pixel_layer(
        Image.new("RGB", (20, 10), (255, 0, 0)), name="Red", top=5, left=10
    )
    green = psdimage.create_pixel_layer(
        Image.new("RGB", (10, 10), (0, 255, 0)), name="Green", top=50, left=50
    )
    psdimage.create_group([green], name="Group")
    path = tmp_path / "test.psd"
    psdimage.save(path)
    return path


def children_by_name(node: Any) -> dict:
    return {child.name: child for child in node.children}


def test_open_document(psd_file: Path) -> None:
    document = open_document(psd_file)
    assert document.header() == (100, 80)
    assert document.slices() == []

    children = children_by_name(document.tree())
    assert set(children) == {"Red", "Group"}

    red = children["Red"]
    assert red.kind == NodeKind.LAYER
    assert red.bounds == Rect(10, 5, 20, 10)
    assert red.visible
    assert red.opacity == 255
    assert red.blend_mode == "normal"
    assert red.key.startswith("node_")
    assert not red.is_text_layer()
    assert red.text_content() == ""
    assert red.text_info() is None
    assert red.children == []

    group = children["Group"]
    assert group.kind == NodeKind.GROUP
    assert [child.name for child in group.children] == ["Green"]
    assert group.bounds == Rect(50, 50, 10, 10)


def test_to_raw_raster(psd_file: Path) -> None:
    red = children_by_name(open_document(psd_file).tree())["Red"]
    image = red.to_raw_raster()
    assert image.mode == "RGBA"
    assert image.size == (20, 10)


@pytest.mark.composite
def test_to_raster(psd_file: Path) -> None:
    children = children_by_name(open_document(psd_file).tree())
    image = children["Red"].to_raster()
    assert image.mode == "RGBA"
    assert image.size == (20, 10)

    group = children["Group"]
    assert group.to_raster().size == (10, 10)
    assert group.to_raster_without_text().size == (10, 10)


@pytest.mark.composite
def test_flattened_image(psd_file: Path) -> None:
    image = open_document(psd_file).flattened_image()
    assert image.size == (100, 80)
    assert image.mode == "RGBA"


def test_open_missing_file(tmp_path: Path) -> None:
    with pytest.raises(DecodeError):
        open_document(tmp_path / "missing.psd")


def test_open_invalid_file(tmp_path: Path) -> None:
    path = tmp_path / "invalid.psd"
    path.write_bytes(b"not a psd file")
    with pytest.raises(DecodeError):
        open_document(path)


class FakeResources:
    def __init__(self, data: Any):
        self._data = data

    def get_data(self, key: Any) -> Any:
        return self._data


def fake_psd(resource: Any) -> Any:
    return SimpleNamespace(image_resources=FakeResources(resource))


def test_slices_version_6() -> None:
    items = [
        SimpleNamespace(bbox=(2, 1, 22, 11), slice_id=3, name="hero"),
        SimpleNamespace(bbox=(0, 0, 5, 5), slice_id=4, name=""),
    ]
    resource = SimpleNamespace(version=6, data=SimpleNamespace(items=items))
    slices = PSDDocument(fake_psd(resource)).slices()
    assert slices == [
        SliceInfo(3, "hero", Rect(1, 2, 10, 20)),
        SliceInfo(4, "", Rect(0, 0, 5, 5)),
    ]
    assert slices[1].display_name == "Slice 4"


def test_slices_descriptor() -> None:
    descriptor = {
        b"slices": [
            {
                b"sliceID": 1,
                b"Nm  ": "banner",
                b"bounds": {b"Left": 0, b"Top": 10, b"Rght": 50, b"Btom": 30},
            },
            {
                b"sliceID": 2,
                b"bounds": {b"Left": 5, b"Top": 5, b"Rght": 6, b"Btom": 6},
            },
        ]
    }
    resource = SimpleNamespace(version=7, data=descriptor)
    assert PSDDocument(fake_psd(resource)).slices() == [
        SliceInfo(1, "banner", Rect(0, 10, 50, 20)),
        SliceInfo(2, "", Rect(5, 5, 1, 1)),
    ]


def test_slices_missing() -> None:
    assert PSDDocument(fake_psd(None)).slices() == []


def test_slices_unreadable() -> None:
    resource = SimpleNamespace(version=7, data={b"slices": [{b"sliceID": 1}]})
    assert PSDDocument(fake_psd(resource)).slices() == []


class FakeTypeLayer:
    kind = "type"
    name = "Title"

    def __init__(self, text: Any):
        self._text = text

    @property
    def text(self) -> str:
        if isinstance(self._text, Exception):
            raise self._text
        return self._text

    @property
    def engine_dict(self) -> Any:
        raise AttributeError("engine_data")


@pytest.mark.parametrize(
    "value, expected",
    [
        ("Hello\rworld\r", "Hello\nworld"),
        ("Hello\r\nworld", "Hello\nworld"),
        ("single line", "single line"),
        ("", ""),
        (None, ""),
        (AttributeError("'NoneType' object has no attribute 'value'"), ""),
        (KeyError(b"Txt "), ""),
    ],
)
def test_text_content(value: Any, expected: str) -> None:
    assert PSDNode(FakeTypeLayer(value)).text_content() == expected


def test_text_info_unreadable() -> None:
    assert PSDNode(FakeTypeLayer("x")).text_info() is None
