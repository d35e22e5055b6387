import logging
import struct

import pytest

from builders import MDL3, build_mdl2, build_mdl3
from tyasset.errors import MalformedHeaderError
from tyasset.model_header import (
    ExternalGeometryMetadata, InlineGeometry, ModelHeaderParser, parse_model_header, parse_segment,
)

QUAD_SEGMENT = [
    ((0.0, 0.0, 0.0), (0.0, 0.0)),
    ((1.0, 0.0, 0.0), (1.0, 0.0)),
    ((0.0, 1.0, 0.0), (0.0, 1.0)),
    ((1.0, 1.0, 0.5), (1.0, 1.0)),
]


def test_current_header_metadata():
    data = build_mdl3(component_count=2, texture_names=("rock", "CM_wall"),
                      cells={(0, 0): 0x10, (1, 1): 0x40}, component_names=("body", "lid"))
    header = parse_model_header(data)

    assert header.strategy == "current"
    assert header.is_external
    meta = header.geometry
    assert isinstance(meta, ExternalGeometryMetadata)
    assert meta.component_count == 2
    assert meta.texture_count == 2
    assert meta.texture_names == ["rock", "CM_wall"]
    assert meta.texture_name(1) == "CM_wall"
    assert meta.texture_name(5) == ""
    assert [c.name for c in meta.components] == ["body", "lid"]
    assert meta.components[1].bounds.position.x == 1.0
    assert meta.object_lookup_table_offset > 0
    assert header.bounds.size.as_tuple() == (2.0, 4.0, 6.0)


def test_component_count_over_limit_is_malformed():
    data = bytearray(build_mdl3())
    struct.pack_into("<H", data, 0x04, 50000)
    with pytest.raises(MalformedHeaderError):
        parse_model_header(bytes(data))


def test_count_limit_is_configurable(config):
    data = bytearray(build_mdl3())
    struct.pack_into("<H", data, 0x04, 1500)
    header = parse_model_header(bytes(data), config.with_overrides(max_header_count=2000))
    assert header.geometry.component_count == 1500


def test_legacy_header_inline_geometry():
    header = parse_model_header(build_mdl2(QUAD_SEGMENT))

    assert header.strategy == "legacy"
    assert not header.is_external
    assert header.name == "box01"
    geometry = header.geometry
    assert isinstance(geometry, InlineGeometry)
    assert len(geometry.subobjects) == 1
    sub = geometry.subobjects[0]
    assert sub.name == "box01"
    assert sub.material == "wood"
    mesh = sub.meshes[0]
    assert mesh.material == "wood"
    assert mesh.vertex_count == 4

    v = mesh.segments[0].vertices[3]
    assert v.position == (1.0, 1.0, 0.5)
    assert v.texcoord == pytest.approx((1.0, 1.0))
    assert v.normal == pytest.approx((0.0, 0.0, 1.0))
    assert v.skin == pytest.approx((1.0, 1.0, 2.0))
    assert v.colour == pytest.approx((1.0, 128 / 255.0, 0.0, 1.0))

    assert len(header.colliders) == 1
    assert header.colliders[0].radius == 2.5
    assert header.bones[0].position.y == 0.5


def test_legacy_compatible_skips_implausible_subobject_offset(diagnostics):
    # MDL3 signature, MDL2 field layout, too short for the current layout
    data = bytearray(80)
    struct.pack_into("<IHHHHIII", data, 0, MDL3, 1, 1, 0, 0, 20000, 0, 0)
    header = ModelHeaderParser(diagnostics=diagnostics).parse(bytes(data))

    assert header.strategy == "legacy_compatible"
    assert header.geometry.subobjects_skipped
    assert len(header.geometry.subobjects) == 1
    assert header.geometry.subobjects[0].meshes == []
    assert any("subobject_offset" in e.message for e in diagnostics.warnings)


def test_failed_strategies_are_reported(diagnostics):
    data = bytearray(80)
    struct.pack_into("<IHHHHIII", data, 0, MDL3, 1, 1, 0, 0, 20000, 0, 0)
    ModelHeaderParser(diagnostics=diagnostics).parse(bytes(data))
    failed = [e for e in diagnostics.events if e.level == logging.DEBUG and "failed" in e.message]
    assert {e.context["strategy"] for e in failed} == {"legacy", "current"}


def test_too_short_is_malformed():
    with pytest.raises(MalformedHeaderError):
        parse_model_header(b"MDL")


@pytest.mark.parametrize("cut", [8, 40, 75])
def test_truncated_headers_never_crash(cut):
    data = build_mdl3()[:cut]
    with pytest.raises(MalformedHeaderError):
        parse_model_header(data)


def test_segment_declaring_too_many_vertices_is_truncated():
    from tyasset.errors import TruncatedDataError
    seg = bytearray(60)
    struct.pack_into("<I", seg, 12, 100000)
    with pytest.raises(TruncatedDataError):
        parse_segment(bytes(seg), 0)


def test_truncated_collider_and_bone_tables_are_reported(diagnostics):
    data = bytearray(build_mdl2(QUAD_SEGMENT))
    struct.pack_into("<HH", data, 8, 900, 900)
    header = ModelHeaderParser(diagnostics=diagnostics).parse(bytes(data))

    assert header.strategy == "legacy"
    assert 1 <= len(header.colliders) < 900
    assert 1 <= len(header.bones) < 900
    messages = [e.message for e in diagnostics.warnings]
    assert any("Collider table truncated" in m for m in messages)
    assert any("Bone table truncated" in m for m in messages)


def test_parser_keeps_callers_channel(diagnostics):
    assert ModelHeaderParser(diagnostics=diagnostics).diagnostics is diagnostics
