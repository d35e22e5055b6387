"""
Model header (.mdl) parser.

Two header generations exist. Legacy (MDL2) headers embed their geometry
as subobject -> mesh -> segment trees. Current (MDL3) headers carry only
metadata: texture names, component descriptors and an object lookup table
pointing into a separate geometry stream (.mdg).

Parsing tries an ordered list of strategies and returns the first that
succeeds:

1. legacy:             MDL2 signature, inline subobjects parsed directly
2. current:            structured MDL3 metadata, counts sanity-checked
3. legacy_compatible:  MDL2 field layout under the MDL3 signature; subobject
                       parsing is skipped when the offsets look implausible

A failed strategy is reported to the diagnostics channel and the next one is
attempted. Only when every strategy fails does parsing raise
MalformedHeaderError.
"""

import logging
import struct
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple, Union

from .config import DecoderConfig
from .diagnostics import Diagnostics
from .errors import MalformedHeaderError, TruncatedDataError, TYFormatError
from .reader import byte_to_unit, cstring_at, uint16_at, uint32_at
from .structs import (
    BONE_SIZE, COLLIDER_SIZE, COMPONENT_DESC_SIZE, LEGACY_NAME_OFFSET_FIELD,
    MDL2_SIGNATURE, MDL3_SIGNATURE, MESH_SIZE, SEGMENT_COUNT_FIELD,
    SEGMENT_VERTEX_DATA, SUBOBJECT_SIZE, BoneRecord, ColliderRecord,
    ComponentDescriptor, CurrentModelHeader, LegacyModelHeader, MeshEntry,
    Subobject, parse_at, vector_tuple,
)
from .types import Bone, Bounds, Collider, GeometryVertex, Vector

logger = logging.getLogger(__name__)

STAGE = "model_header"

# Name offsets beyond this are treated as garbage
NAME_OFFSET_LIMIT = 1000000


# =============================================================================
# HEADER TYPES
# =============================================================================

@dataclass
class Segment:
    vertices: List[GeometryVertex]


@dataclass
class InlineMesh:
    material: str
    segments: List[Segment]

    @property
    def vertex_count(self) -> int:
        return sum(len(s.vertices) for s in self.segments)


@dataclass
class InlineSubobject:
    bounds: Bounds = field(default_factory=Bounds)
    name: str = ""
    material: str = ""
    triangle_count: int = 0
    meshes: List[InlineMesh] = field(default_factory=list)


@dataclass
class InlineGeometry:
    """Legacy variant: geometry embedded in the header.

    subobjects_skipped is set by the legacy-compatible strategy when the
    subobject offsets were implausible and geometry must come from the
    external stream instead.
    """
    subobjects: List[InlineSubobject] = field(default_factory=list)
    frag_count: int = 0
    subobjects_skipped: bool = False


@dataclass
class ComponentInfo:
    bounds: Bounds
    name: str = ""


@dataclass
class ExternalGeometryMetadata:
    """Current variant: where the external geometry stream's meshes live."""
    component_count: int
    texture_count: int
    anim_node_count: int = 0
    ref_point_count: int = 0
    mesh_count: int = 0
    strip_count: int = 0
    anim_node_list_count: int = 0
    texture_names: List[str] = field(default_factory=list)
    component_desc_offset: int = 0
    texture_list_offset: int = 0
    ref_points_offset: int = 0
    anim_node_data_offset: int = 0
    anim_node_lists_offset: int = 0
    object_lookup_table_offset: int = 0
    string_table_offset: int = 0
    components: List[ComponentInfo] = field(default_factory=list)

    def texture_name(self, index: int) -> str:
        if 0 <= index < len(self.texture_names):
            return self.texture_names[index]
        return ""


@dataclass
class ModelHeader:
    bounds: Bounds
    name: str
    geometry: Union[InlineGeometry, ExternalGeometryMetadata]
    colliders: List[Collider] = field(default_factory=list)
    bones: List[Bone] = field(default_factory=list)
    signature: int = 0
    strategy: str = ""

    @property
    def is_external(self) -> bool:
        return isinstance(self.geometry, ExternalGeometryMetadata)


# =============================================================================
# HELPERS
# =============================================================================

def _bounds(container) -> Bounds:
    return Bounds(
        position=Vector(*vector_tuple(container.position)),
        size=Vector(*vector_tuple(container.size)),
        origin=Vector(*vector_tuple(container.origin)),
    )


def _name_at(data: bytes, offset: int) -> str:
    if offset <= 0 or offset >= min(len(data), NAME_OFFSET_LIMIT):
        return ""
    return cstring_at(data, offset)


def _segment_size(vertex_count: int) -> int:
    return (SEGMENT_VERTEX_DATA + vertex_count * 12 +
            4 + vertex_count * 4 +
            4 + vertex_count * 8 +
            4 + vertex_count * 4)


def parse_segment(data: bytes, offset: int) -> Tuple[Segment, int]:
    """Parse one inline vertex segment.

    Layout after a 52-byte segment header (vertex count at +12):
    positions (3 floats), pad, normals (3 bytes + pad), pad,
    texcoords/skin (u, v, modifier as s16 1/4096; bone A, bone B as s8),
    pad, RGBA bytes.

    Returns:
        (segment, byte size of the segment)
    """
    count = uint32_at(data, offset + SEGMENT_COUNT_FIELD)
    size = _segment_size(count)
    if offset + size > len(data):
        raise TruncatedDataError(
            f"Segment at {offset} declares {count} vertices ({size} bytes), "
            f"buffer has {len(data) - offset}"
        )

    pos_off = offset + SEGMENT_VERTEX_DATA
    nrm_off = pos_off + count * 12 + 4
    tex_off = nrm_off + count * 4 + 4
    col_off = tex_off + count * 8 + 4

    positions = struct.iter_unpack("<3f", data[pos_off:pos_off + count * 12])
    normals = struct.iter_unpack("<4B", data[nrm_off:nrm_off + count * 4])
    texskin = struct.iter_unpack("<3h2b", data[tex_off:tex_off + count * 8])
    colours = struct.iter_unpack("<4B", data[col_off:col_off + count * 4])

    vertices = []
    for pos, nrm, ts, col in zip(positions, normals, texskin, colours):
        u, v, modifier, bone_a, bone_b = ts
        vertices.append(GeometryVertex(
            position=pos,
            normal=(byte_to_unit(nrm[0]), byte_to_unit(nrm[1]), byte_to_unit(nrm[2])),
            texcoord=(u / 4096.0, abs(v / 4096.0 - 1.0)),
            skin=(modifier / 4096.0, float(bone_a), float(bone_b)),
            colour=tuple(byte_to_unit(c) for c in col),
        ))
    return Segment(vertices), size


def parse_mesh(data: bytes, offset: int) -> InlineMesh:
    entry = parse_at(MeshEntry, data, offset, "mesh entry")
    material = _name_at(data, entry.material_offset)

    segments = []
    seg_off = entry.segment_offset
    for _ in range(entry.segment_count):
        segment, size = parse_segment(data, seg_off)
        segments.append(segment)
        seg_off += size
    return InlineMesh(material, segments)


def parse_subobject(data: bytes, offset: int) -> InlineSubobject:
    entry = parse_at(Subobject, data, offset, "subobject")
    meshes = []
    mesh_off = entry.mesh_offset
    for _ in range(entry.mesh_count):
        meshes.append(parse_mesh(data, mesh_off))
        mesh_off += MESH_SIZE
    return InlineSubobject(
        bounds=_bounds(entry.bounds),
        name=_name_at(data, entry.name_offset),
        material=_name_at(data, entry.material_offset),
        triangle_count=entry.triangle_count,
        meshes=meshes,
    )


def parse_colliders(data: bytes, offset: int, count: int,
                    diagnostics: Optional[Diagnostics] = None) -> List[Collider]:
    """Collider records that fit entirely inside the buffer."""
    colliders = []
    for i in range(count):
        rec_off = offset + i * COLLIDER_SIZE
        if rec_off + COLLIDER_SIZE > len(data):
            if diagnostics is not None:
                diagnostics.warning(STAGE, f"Collider table truncated: {i} of {count} records fit in header")
            break
        rec = ColliderRecord.parse(data[rec_off:rec_off + COLLIDER_SIZE])
        colliders.append(Collider(Vector(*vector_tuple(rec.position)), rec.radius))
    return colliders


def parse_bones(data: bytes, offset: int, count: int,
                diagnostics: Optional[Diagnostics] = None) -> List[Bone]:
    bones = []
    for i in range(count):
        rec_off = offset + i * BONE_SIZE
        if rec_off + BONE_SIZE > len(data):
            if diagnostics is not None:
                diagnostics.warning(STAGE, f"Bone table truncated: {i} of {count} records fit in header")
            break
        rec = BoneRecord.parse(data[rec_off:rec_off + BONE_SIZE])
        bones.append(Bone(Vector(*vector_tuple(rec.position))))
    return bones


# =============================================================================
# PARSER
# =============================================================================

class ModelHeaderParser:
    """Ordered-strategy parser for .mdl headers."""

    def __init__(self, config: Optional[DecoderConfig] = None,
                 diagnostics: Optional[Diagnostics] = None):
        self.config = config or DecoderConfig()
        self.diagnostics = diagnostics if diagnostics is not None else Diagnostics()

    @property
    def strategies(self) -> List[Tuple[str, Callable[[bytes], ModelHeader]]]:
        return [
            ("legacy", self._parse_legacy),
            ("current", self._parse_current),
            ("legacy_compatible", self._parse_legacy_compatible),
        ]

    def parse(self, data: bytes) -> ModelHeader:
        """Parse a header blob into a ModelHeader.

        Raises:
            MalformedHeaderError: every strategy failed
        """
        if len(data) < 4:
            raise MalformedHeaderError(f"Model header is only {len(data)} bytes")

        failures = []
        for name, strategy in self.strategies:
            try:
                header = strategy(data)
            except TYFormatError as e:
                failures.append(f"{name}: {e}")
                self.diagnostics.debug(STAGE, f"Strategy '{name}' failed: {e}", strategy=name)
                continue
            header.strategy = name
            self.diagnostics.info(STAGE, f"Parsed model header with '{name}' strategy", strategy=name)
            return header

        signature = uint32_at(data, 0)
        raise MalformedHeaderError(
            f"No header strategy accepted the data (signature 0x{signature:08X}): "
            + "; ".join(failures)
        )

    def _check_counts(self, **counts):
        limit = self.config.max_header_count
        too_high = {k: v for k, v in counts.items() if v > limit}
        if too_high:
            detail = ", ".join(f"{k}={v}" for k, v in too_high.items())
            raise MalformedHeaderError(f"Counts too high (limit {limit}): {detail}")

    # --- Strategy 1 -------------------------------------------------------

    def _parse_legacy(self, data: bytes) -> ModelHeader:
        head = parse_at(LegacyModelHeader, data, 0, "legacy header")
        if head.signature != MDL2_SIGNATURE:
            raise MalformedHeaderError(f"Signature 0x{head.signature:08X} is not MDL2")

        self._check_counts(
            subobject_count=head.subobject_count,
            collider_count=head.collider_count,
            bone_count=head.bone_count,
        )

        subobjects = []
        offset = head.subobject_offset
        for _ in range(head.subobject_count):
            subobjects.append(parse_subobject(data, offset))
            offset += SUBOBJECT_SIZE

        if not subobjects:
            self.diagnostics.warning(STAGE, "MDL file has no subobjects")

        return ModelHeader(
            bounds=_bounds(head.bounds),
            name=_name_at(data, uint32_at(data, LEGACY_NAME_OFFSET_FIELD)),
            geometry=InlineGeometry(subobjects=subobjects, frag_count=head.frag_count),
            colliders=parse_colliders(data, head.collider_offset, head.collider_count, self.diagnostics),
            bones=parse_bones(data, head.bone_offset, head.bone_count, self.diagnostics),
            signature=head.signature,
        )

    # --- Strategy 2 -------------------------------------------------------

    def _parse_current(self, data: bytes) -> ModelHeader:
        head = parse_at(CurrentModelHeader, data, 0, "current header")
        if head.signature != MDL3_SIGNATURE:
            self.diagnostics.debug(
                STAGE, f"Signature 0x{head.signature:08X} is not MDL3, trying current layout anyway"
            )

        # mesh_count and strip_count are informational and never size a buffer
        self._check_counts(
            component_count=head.component_count,
            texture_count=head.texture_count,
            anim_node_count=head.anim_node_count,
            ref_point_count=head.ref_point_count,
        )

        texture_names = []
        for ti in range(head.texture_count):
            name_off = uint32_at(data, head.texture_list_offset + ti * 4)
            texture_names.append(cstring_at(data, name_off))

        string_table = 0
        components = []
        if head.component_desc_offset > 0:
            string_table = uint16_at(data, head.component_desc_offset + 0x34)
            for ci in range(head.component_count):
                comp_off = head.component_desc_offset + ci * COMPONENT_DESC_SIZE
                try:
                    desc = parse_at(ComponentDescriptor, data, comp_off, "component descriptor")
                    name = _name_at(data, desc.name_offset)
                except TruncatedDataError as e:
                    self.diagnostics.warning(STAGE, f"Component {ci} descriptor unreadable: {e}")
                    break
                components.append(ComponentInfo(_bounds(desc.bounds), name))

        table_end = head.object_lookup_table + head.texture_count * head.component_count * 4
        if table_end > len(data):
            self.diagnostics.warning(
                STAGE,
                f"Object lookup table at {head.object_lookup_table} runs past header end "
                f"({table_end} > {len(data)}); out-of-range cells will be skipped",
            )

        metadata = ExternalGeometryMetadata(
            component_count=head.component_count,
            texture_count=head.texture_count,
            anim_node_count=head.anim_node_count,
            ref_point_count=head.ref_point_count,
            mesh_count=head.mesh_count,
            strip_count=head.strip_count,
            anim_node_list_count=head.anim_node_list_count,
            texture_names=texture_names,
            component_desc_offset=head.component_desc_offset,
            texture_list_offset=head.texture_list_offset,
            ref_points_offset=head.ref_points_offset,
            anim_node_data_offset=head.anim_node_data_offset,
            anim_node_lists_offset=head.anim_node_lists_offset,
            object_lookup_table_offset=head.object_lookup_table,
            string_table_offset=string_table,
            components=components,
        )

        logger.debug(
            f"ComponentCount={head.component_count} TextureCount={head.texture_count} "
            f"MeshCount={head.mesh_count} StripCount={head.strip_count}"
        )

        return ModelHeader(
            bounds=Bounds(
                position=Vector(*vector_tuple(head.bounds_position)),
                size=Vector(*vector_tuple(head.bounds_size)),
            ),
            name="",
            geometry=metadata,
            signature=head.signature,
        )

    # --- Strategy 3 -------------------------------------------------------

    def _parse_legacy_compatible(self, data: bytes) -> ModelHeader:
        head = parse_at(LegacyModelHeader, data, 0, "legacy-compatible header")
        if head.signature != MDL3_SIGNATURE:
            raise MalformedHeaderError(f"Signature 0x{head.signature:08X} is not MDL3")

        self._check_counts(
            frag_count=head.frag_count,
            subobject_count=head.subobject_count,
            collider_count=head.collider_count,
            bone_count=head.bone_count,
        )

        offset = head.subobject_offset
        skip = offset > self.config.legacy_offset_limit or (offset == 0 and head.subobject_count > 0)
        if skip:
            self.diagnostics.warning(
                STAGE,
                f"subobject_offset looks invalid ({offset}), skipping subobject parsing; "
                "geometry will come from the external stream",
            )

        subobjects = []
        for i in range(head.subobject_count):
            if skip:
                subobjects.append(InlineSubobject())
                continue
            try:
                subobjects.append(parse_subobject(data, offset))
            except TYFormatError as e:
                self.diagnostics.warning(STAGE, f"Failed to parse subobject {i}, using empty subobject: {e}")
                subobjects.append(InlineSubobject())
            offset += SUBOBJECT_SIZE

        return ModelHeader(
            bounds=_bounds(head.bounds),
            name=_name_at(data, uint32_at(data, LEGACY_NAME_OFFSET_FIELD)),
            geometry=InlineGeometry(
                subobjects=subobjects,
                frag_count=head.frag_count,
                subobjects_skipped=skip,
            ),
            colliders=parse_colliders(data, head.collider_offset, head.collider_count, self.diagnostics),
            bones=parse_bones(data, head.bone_offset, head.bone_count, self.diagnostics),
            signature=head.signature,
        )


def parse_model_header(data: bytes, config: Optional[DecoderConfig] = None,
                       diagnostics: Optional[Diagnostics] = None) -> ModelHeader:
    """Parse a .mdl header blob (see ModelHeaderParser)."""
    return ModelHeaderParser(config, diagnostics).parse(data)
