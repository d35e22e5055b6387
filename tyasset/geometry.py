"""
Geometry stream (.mdg) decoder.

Current-generation models keep their vertices in a separate stream. Two
incompatible encodings exist and are told apart by content, never by file
name:

- console: VIF-style packets. Mesh records are found through the header's
  object lookup table; each strip starts at a 00 80 02 6C marker and packs
  positions, normals, fixed-point UVs, bone indices and colours in one of
  three layouts.
- PC: all mesh headers first, then one contiguous block of 48-byte
  interleaved vertices whose start offset is not stored anywhere and has to
  be searched for.

A pattern-based fallback handles streams without usable metadata.

Recovered failures (a bad strip, a truncated mesh) are reported to the
diagnostics channel and skipped; decoding only fails when no mesh at all
could be extracted.
"""

import logging
import struct
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Sequence, Tuple, Union

import numpy as np

from .config import DecoderConfig
from .diagnostics import Diagnostics
from .errors import AmbiguousGeometryError, DecodeCancelled, TruncatedDataError
from .model_header import ExternalGeometryMetadata, ModelHeader
from .reader import BinaryReader, byte_to_unit, find_all, find_pattern, int32_at, uint16_at
from .strips import reconcile_strip_counts
from .structs import (
    ANIM_NODE_LIST_COUNT_FIELD, ANIM_NODE_LIST_SIZE, CONSOLE_MARKER,
    FALLBACK_NORMAL_MARKER, MESH_NEXT_FIELD, MESH_RECORD_SIZE, PC_VERTEX_DTYPE,
    MeshRecordHeader, parse_at,
)
from .types import WHITE, DecodedMesh, GeometryVertex

logger = logging.getLogger(__name__)

STAGE = "geometry"

CONSOLE = "console"
PC = "pc"
FALLBACK = "fallback"

NO_ANIM_NODE_LIST = 0xFFFF

# Console strip preamble: count byte, 3 pad, 32 unknown, 0x27 before positions
CONSOLE_STRIP_PAD = 3
CONSOLE_STRIP_UNKNOWN = 32
CONSOLE_STRIP_PRE_POSITIONS = 0x27

FORMAT_NORMALS_UV = 0x6A
FORMAT_UV_ONLY = 0x65

# Mesh records larger than this can't be real; the vertex cursor can't be
# trusted past one
MAX_STRIPS_PER_MESH = 1000


def _check_cancel(cancel_event):
    if cancel_event is not None and cancel_event.is_set():
        raise DecodeCancelled("Geometry decode cancelled")


# =============================================================================
# DETECTION AND SEARCH
# =============================================================================

def detect_platform(stream: bytes, window: int = 1000) -> str:
    """Return CONSOLE if a strip marker starts within the first window bytes, else PC."""
    end = min(len(stream), window + len(CONSOLE_MARKER) - 1)
    return CONSOLE if stream.find(CONSOLE_MARKER, 0, end) != -1 else PC


def _vertex_validity(data: bytes, config: DecoderConfig) -> np.ndarray:
    """Per 4-byte slot: does a 48-byte PC vertex starting here look plausible?"""
    slots = len(data) // 4
    candidates = slots - (config.pc_vertex_stride // 4) + 1
    if candidates <= 0:
        return np.zeros(0, dtype=bool)
    floats = np.frombuffer(data, dtype="<f4", count=slots).astype(np.float64)

    def column(field_offset):
        start = field_offset // 4
        return floats[start:start + candidates]

    with np.errstate(invalid="ignore", over="ignore"):
        x, y, z = column(12), column(16), column(20)
        finite = np.isfinite(x) & np.isfinite(y) & np.isfinite(z)
        limit = config.position_limit
        pos_ok = finite & (np.abs(x) < limit) & (np.abs(y) < limit) & (np.abs(z) < limit)
        thr = config.nonzero_threshold
        nonzero = (np.abs(x) > thr) | (np.abs(y) > thr) | (np.abs(z) > thr)

        nx, ny, nz = column(36), column(40), column(44)
        length = np.sqrt(nx * nx + ny * ny + nz * nz)
        normal_ok = (np.isfinite(nx) & np.isfinite(ny) & np.isfinite(nz) &
                     (length > config.normal_min) & (length < config.normal_max))

    return pos_ok & nonzero & normal_ok


def locate_vertex_block(data: bytes, after_offset: int,
                        config: Optional[DecoderConfig] = None,
                        cancel_event=None) -> Optional[Tuple[int, float]]:
    """Find where the PC interleaved vertex block starts.

    Scans 4-byte aligned offsets from after_offset for a window of
    consecutive 48-byte vertices in which at least block_min_valid have a
    finite, bounded, non-zero position AND a roughly unit-length normal.
    Header bytes pass one check or the other often enough; requiring both
    keeps the scan from stopping inside header data.

    Returns:
        (offset, confidence) where confidence is the valid fraction of the
        window, or None if no block was found.
    """
    config = config or DecoderConfig()
    stride = config.pc_vertex_stride
    slots_per_vertex = stride // 4
    need = config.block_min_valid

    valid = _vertex_validity(data, config)
    candidates = len(valid)
    if candidates == 0:
        return None

    # Window counts: valid vertices among the next block_search_window
    counts = np.zeros(candidates, dtype=np.int32)
    for v in range(config.block_search_window):
        shift = v * slots_per_vertex
        if shift >= candidates:
            break
        counts[:candidates - shift] += valid[shift:]

    first = max(0, after_offset) // 4
    last = (len(data) - need * stride) // 4
    chunk = 1 << 16
    for chunk_start in range(first, last + 1, chunk):
        _check_cancel(cancel_event)
        window = counts[chunk_start:min(last + 1, chunk_start + chunk)]
        hits = np.nonzero(window >= need)[0]
        if len(hits):
            slot = chunk_start + int(hits[0])
            offset = slot * 4
            available = min(config.block_search_window, (len(data) - offset) // stride)
            return offset, float(counts[slot]) / available
    return None


def uv_shift_votes(positions: np.ndarray, uvs: np.ndarray, epsilon: float) -> Tuple[int, int, int]:
    """Vote on the PC UV offset using adjacent same-position vertex pairs.

    Returns:
        (pairs, matches without shift, matches with +1 shift)
    """
    if len(positions) < 2:
        return 0, 0, 0
    with np.errstate(invalid="ignore", over="ignore"):
        same_pos = np.all(np.abs(positions[1:] - positions[:-1]) < epsilon, axis=1)
        same_uv = np.all(np.abs(uvs[1:] - uvs[:-1]) < epsilon, axis=1)
    pairs = int(np.count_nonzero(same_pos))
    matches0 = int(np.count_nonzero(same_pos & same_uv))
    matches1 = int(np.count_nonzero(same_pos[:-1] & same_uv[1:]))
    return pairs, matches0, matches1


def choose_uv_shift(positions: np.ndarray, uvs: np.ndarray, epsilon: float = 1e-5,
                    mode: str = "auto") -> int:
    """Pick 0 or +1 as the UV offset relative to position/normal.

    In PC streams the UV pair read with a vertex often belongs to the next
    vertex. auto mode takes the majority vote of uv_shift_votes; never and
    always force the choice.
    """
    if mode == "never":
        return 0
    if mode == "always":
        return 1
    pairs, matches0, matches1 = uv_shift_votes(positions, uvs, epsilon)
    return 1 if pairs > 0 and matches1 > matches0 else 0


def is_box_like(positions: np.ndarray, scale: float = 1000.0, max_points: int = 8) -> bool:
    """True for bounding-box style debug geometry.

    At most max_points distinct positions after quantizing, and at most two
    distinct values on each axis.
    """
    if len(positions) == 0:
        return False
    quantized = np.round(positions * scale).astype(np.int64)
    if len(np.unique(quantized, axis=0)) > max_points:
        return False
    return all(len(np.unique(positions[:, axis])) <= 2 for axis in range(3))


# =============================================================================
# DECODER
# =============================================================================

@dataclass
class ParsedPCMesh:
    """One unique PC mesh header with its slice of the vertex block."""
    offset: int
    vertices: List[GeometryVertex] = field(default_factory=list)
    strip_counts: Optional[List[int]] = None
    strip_flags: Optional[List[int]] = None
    valid_for_render: bool = False
    uv_shift: int = 0


class GeometryStreamDecoder:
    """Decodes a geometry stream into DecodedMeshes.

    Args:
        config: thresholds and heuristic switches
        diagnostics: channel receiving every recovered failure
        cancel_event: optional object with is_set(); checked during scans
    """

    def __init__(self, config: Optional[DecoderConfig] = None,
                 diagnostics: Optional[Diagnostics] = None,
                 cancel_event=None):
        self.config = config or DecoderConfig()
        self.diagnostics = diagnostics if diagnostics is not None else Diagnostics()
        self.cancel_event = cancel_event
        self.platform: Optional[str] = None

    def decode(self, stream: bytes,
               header: Union[ModelHeader, ExternalGeometryMetadata, None] = None,
               model_bytes: Optional[bytes] = None) -> List[DecodedMesh]:
        """Decode every mesh the stream holds.

        Args:
            stream: geometry stream bytes
            header: parsed model header (or its external metadata); without
                one only the fallback decoder can run
            model_bytes: the raw header blob, holding the object lookup
                table and anim-node lists

        Raises:
            AmbiguousGeometryError: no mesh could be validated
        """
        if isinstance(header, ModelHeader):
            header = header.geometry
        metadata = header if isinstance(header, ExternalGeometryMetadata) else None

        meshes: List[DecodedMesh] = []
        if not stream:
            raise AmbiguousGeometryError("Geometry stream is empty")

        if metadata is not None and model_bytes is not None:
            self.platform = detect_platform(stream, self.config.marker_scan_window)
            if self.platform == CONSOLE:
                self.diagnostics.info(STAGE, "Detected console format (found strip marker)")
                meshes = self.decode_console(stream, metadata, model_bytes)
            else:
                self.diagnostics.info(STAGE, "No console markers found, assuming PC format")
                meshes = self.decode_pc(stream, metadata, model_bytes)

            if not meshes:
                self.diagnostics.warning(
                    STAGE, f"{self.platform} decoder found no meshes, trying fallback pattern-based parser"
                )
        else:
            self.diagnostics.info(STAGE, "No current-generation metadata, using fallback parser")

        if not meshes:
            self.platform = FALLBACK
            meshes = self.decode_fallback(stream)

        if not meshes:
            raise AmbiguousGeometryError("No valid mesh data found in geometry stream")

        self.diagnostics.info(STAGE, f"Decoded {len(meshes)} meshes ({self.platform} format)")
        return meshes

    # --- Lookup table -----------------------------------------------------

    def iter_lookup_cells(self, model_bytes: bytes,
                          metadata: ExternalGeometryMetadata) -> Iterator[Tuple[int, int, int]]:
        """Yield (texture index, component index, first mesh offset) for non-empty cells."""
        table = metadata.object_lookup_table_offset
        components = metadata.component_count
        reported = False
        for ti in range(metadata.texture_count):
            for ci in range(components):
                cell = table + (ti * components + ci) * 4
                if cell + 4 > len(model_bytes):
                    if not reported:
                        self.diagnostics.warning(
                            STAGE, f"Lookup table cell ({ti}, {ci}) at {cell} is past end of header"
                        )
                        reported = True
                    continue
                mesh_ref = int32_at(model_bytes, cell)
                if mesh_ref != 0:
                    yield ti, ci, mesh_ref

    def walk_mesh_list(self, stream: bytes, mesh_ref: int) -> Iterator[int]:
        """Follow a linked list of mesh records, stopping on bad or repeated offsets."""
        seen = set()
        while mesh_ref != 0:
            if mesh_ref < 0 or mesh_ref >= len(stream):
                self.diagnostics.warning(STAGE, f"Invalid mesh reference: {mesh_ref}")
                return
            if mesh_ref in seen:
                self.diagnostics.warning(STAGE, f"Mesh list loops back to {mesh_ref}")
                return
            seen.add(mesh_ref)
            yield mesh_ref

            if mesh_ref + MESH_RECORD_SIZE > len(stream):
                return
            mesh_ref = int32_at(stream, mesh_ref + MESH_NEXT_FIELD)

    # --- Console ----------------------------------------------------------

    def read_anim_node_lists(self, model_bytes: bytes,
                             metadata: ExternalGeometryMetadata) -> List[List[int]]:
        """Per-strip bone remap tables (count byte followed by node indices)."""
        lists: List[List[int]] = []
        if metadata.anim_node_lists_offset == 0:
            return lists

        count = uint16_at(model_bytes, ANIM_NODE_LIST_COUNT_FIELD)
        for i in range(count):
            offset = metadata.anim_node_lists_offset + i * ANIM_NODE_LIST_SIZE
            if offset >= len(model_bytes):
                self.diagnostics.warning(STAGE, f"Anim node list {i} at {offset} is past end of header")
                lists.extend([] for _ in range(count - i))
                break
            node_count = min(model_bytes[offset], ANIM_NODE_LIST_SIZE - 1)
            nodes = list(model_bytes[offset + 1:offset + 1 + node_count])
            if len(nodes) < node_count:
                self.diagnostics.warning(
                    STAGE, f"Anim node list {i} truncated: {len(nodes)} of {node_count} nodes present"
                )
            lists.append(nodes)
        return lists

    def decode_console(self, stream: bytes, metadata: ExternalGeometryMetadata,
                       model_bytes: bytes) -> List[DecodedMesh]:
        anim_lists = self.read_anim_node_lists(model_bytes, metadata)
        meshes = []

        for ti, ci, head in self.iter_lookup_cells(model_bytes, metadata):
            for mesh_ref in self.walk_mesh_list(stream, head):
                try:
                    strip_count = uint16_at(stream, mesh_ref + 0x6)
                    anim_index = uint16_at(stream, mesh_ref + 0x8)
                except TruncatedDataError as e:
                    self.diagnostics.warning(STAGE, f"Mesh record at {mesh_ref} truncated: {e}")
                    continue

                vertices: List[GeometryVertex] = []
                counts: List[int] = []
                cursor = mesh_ref + MESH_NEXT_FIELD
                for si in range(strip_count):
                    _check_cancel(self.cancel_event)
                    marker = find_pattern(stream, CONSOLE_MARKER, cursor,
                                          cursor + self.config.strip_marker_search + len(CONSOLE_MARKER) - 1)
                    if marker == -1:
                        self.diagnostics.warning(
                            STAGE, f"Could not find strip marker for strip {si} of mesh {mesh_ref}"
                        )
                        break
                    cursor = marker + len(CONSOLE_MARKER)
                    try:
                        strip, cursor = self.parse_console_strip(stream, cursor, anim_index, anim_lists)
                    except TruncatedDataError as e:
                        self.diagnostics.warning(
                            STAGE, f"Failed to parse strip {si} of mesh {mesh_ref}: {e}",
                            mesh=mesh_ref, strip=si,
                        )
                        continue
                    vertices.extend(strip)
                    counts.append(len(strip))

                if vertices:
                    meshes.append(DecodedMesh(
                        vertices=vertices,
                        strip_counts=counts,
                        texture_index=ti,
                        component_index=ci,
                        source_offset=mesh_ref,
                    ))

        self.diagnostics.info(STAGE, f"Parsed {len(meshes)} meshes (console format)")
        return meshes

    def parse_console_strip(self, stream: bytes, offset: int, anim_index: int = NO_ANIM_NODE_LIST,
                            anim_lists: Sequence[Sequence[int]] = ()) -> Tuple[List[GeometryVertex], int]:
        """Decode one console strip starting right after its marker.

        Returns:
            (vertices, offset just past the strip)
        """
        r = BinaryReader(stream, offset)
        count = r.read_uint8()
        r.skip(CONSOLE_STRIP_PAD)
        r.skip(CONSOLE_STRIP_UNKNOWN)
        r.skip(CONSOLE_STRIP_PRE_POSITIONS)

        r.require(count * 12, "positions")
        positions = list(struct.iter_unpack("<3f", r.read_bytes(count * 12)))
        r.skip(2)
        format_marker = r.read_bytes(2)[1]

        normals = [(0.0, 0.0, 1.0)] * count
        texcoords = []
        skins = [(0.0, 0.0, 0.0)] * count

        if format_marker == FORMAT_NORMALS_UV:
            r.require(count * 4, "normals")
            packed = r.read_bytes(count * 4)
            normals = [_unit3(packed, i * 4) for i in range(count)]
            r.skip(4)
            r.skip(count % 4)
            r.require(count * 8, "texcoords")
            texcoords = _fixed_uvs(r.read_bytes(count * 8), count)
        elif format_marker == FORMAT_UV_ONLY:
            r.require(count * 8, "texcoords")
            texcoords = _fixed_uvs(r.read_bytes(count * 8), count)
        else:
            r.require(count * 4, "normals")
            packed = r.read_bytes(count * 4)
            normals = [_unit3(packed, i * 4) for i in range(count)]
            bones_a = [_remap_bone(packed[i * 4 + 3] >> 1, 1, anim_index, anim_lists) for i in range(count)]
            r.skip(4)
            r.require(count * 8, "texcoords")
            shorts = r.read_bytes(count * 8)
            texcoords = _fixed_uvs(shorts, count)
            bones_b = [
                _remap_bone(struct.unpack_from("<H", shorts, i * 8 + 6)[0] >> 2, 2, anim_index, anim_lists)
                for i in range(count)
            ]
            skins = [(0.0, float(a), float(b)) for a, b in zip(bones_a, bones_b)]

        r.skip(4)
        r.require(count * 4, "colours")
        colours = r.read_bytes(count * 4)

        vertices = [
            GeometryVertex(
                position=positions[i],
                normal=normals[i],
                texcoord=texcoords[i],
                skin=skins[i],
                colour=tuple(byte_to_unit(c) for c in colours[i * 4:i * 4 + 4]),
            )
            for i in range(count)
        ]
        return vertices, r.tell()

    # --- PC ---------------------------------------------------------------

    def decode_pc(self, stream: bytes, metadata: ExternalGeometryMetadata,
                  model_bytes: bytes) -> List[DecodedMesh]:
        """Decode the PC encoding.

        Mesh headers are often shared by several lookup-table cells, but the
        vertex block holds each unique header's vertices once, in first-seen
        traversal order. Each unique header is parsed exactly once while a
        single cursor walks the block; cells then reuse the parsed result.
        """
        config = self.config

        # Pass 1: unique mesh headers in first-seen order
        order: List[int] = []
        seen = set()
        header_end = 0
        for _ti, _ci, head in self.iter_lookup_cells(model_bytes, metadata):
            for mesh_ref in self.walk_mesh_list(stream, head):
                if mesh_ref in seen:
                    continue
                seen.add(mesh_ref)
                order.append(mesh_ref)
                if mesh_ref + 8 <= len(stream):
                    strip_count = uint16_at(stream, mesh_ref + 0x6)
                    header_end = max(header_end, mesh_ref + MESH_RECORD_SIZE + strip_count * 2)

        if not order:
            self.diagnostics.warning(STAGE, "Object lookup table traversal found 0 mesh references")
            return []
        self.diagnostics.debug(STAGE, f"Unique mesh headers discovered: {len(order)}")

        found = locate_vertex_block(stream, header_end, config, self.cancel_event)
        if found is None:
            self.diagnostics.warning(STAGE, "Could not find global vertex data block")
            return []
        block_start, confidence = found
        self.diagnostics.info(
            STAGE, f"Found global vertex data block at offset {block_start} (confidence {confidence:.2f})"
        )

        # Pass 2: consume the vertex block in unique-header order
        parsed: Dict[int, ParsedPCMesh] = {}
        cursor = block_start
        for mesh_ref in order:
            try:
                record = parse_at(MeshRecordHeader, stream, mesh_ref, "mesh header")
            except TruncatedDataError as e:
                self.diagnostics.error(STAGE, f"Mesh header at {mesh_ref} unreadable, stopping: {e}")
                break

            if record.strip_count > MAX_STRIPS_PER_MESH:
                self.diagnostics.error(
                    STAGE, f"Invalid strip count {record.strip_count} at mesh {mesh_ref}, stopping"
                )
                break

            total = record.base_count + record.duplicate_count
            data_size = total * config.pc_vertex_stride
            if total == 0:
                parsed[mesh_ref] = ParsedPCMesh(mesh_ref)
                continue

            if cursor + data_size > len(stream):
                self.diagnostics.error(
                    STAGE,
                    f"Not enough data for mesh {mesh_ref} at vertex offset {cursor} "
                    f"(need {data_size} bytes, have {len(stream) - cursor})",
                )
                break

            parsed[mesh_ref] = self._parse_pc_mesh(stream, mesh_ref, record, cursor, total)
            cursor += data_size

        # Emit one mesh per lookup-table reference
        meshes = []
        skipped_debug = 0
        skipped_collision = 0
        for ti, ci, head in self.iter_lookup_cells(model_bytes, metadata):
            texture_name = metadata.texture_name(ti)
            collision = texture_name.startswith(tuple(config.collision_prefixes))
            for mesh_ref in self.walk_mesh_list(stream, head):
                mesh = parsed.get(mesh_ref)
                if mesh is None:
                    self.diagnostics.warning(STAGE, f"Missing parsed mesh for reference {mesh_ref}")
                    continue
                if not mesh.valid_for_render:
                    skipped_debug += 1
                    continue
                if collision:
                    skipped_collision += 1
                    continue
                meshes.append(DecodedMesh(
                    vertices=list(mesh.vertices),
                    strip_counts=list(mesh.strip_counts) if mesh.strip_counts else None,
                    texture_index=ti,
                    component_index=ci,
                    source_offset=mesh_ref,
                    strip_flags=list(mesh.strip_flags) if mesh.strip_flags else None,
                ))

        if skipped_debug or skipped_collision:
            self.diagnostics.info(
                STAGE,
                f"Excluded {skipped_debug} debug/empty and {skipped_collision} collision mesh references",
            )
        self.diagnostics.info(STAGE, f"Parsed {len(meshes)} meshes (PC format)")
        return meshes

    def _parse_pc_mesh(self, stream: bytes, mesh_ref: int, record, cursor: int,
                       total: int) -> ParsedPCMesh:
        config = self.config
        result = ParsedPCMesh(mesh_ref)

        # Strip descriptors: low byte vertex count, high byte format flags
        desc_off = mesh_ref + MESH_RECORD_SIZE
        strip_counts: List[int] = []
        strip_flags: List[int] = []
        if record.strip_count and desc_off + record.strip_count * 2 <= len(stream):
            for value in struct.unpack_from(f"<{record.strip_count}H", stream, desc_off):
                strip_counts.append(value & 0xFF)
                strip_flags.append((value >> 8) & 0xFF)

        block = np.frombuffer(stream, dtype=PC_VERTEX_DTYPE, count=total, offset=cursor)
        positions = block["position"].astype(np.float64)
        uvs = block["uv"].astype(np.float64)
        uvs[:, 1] = 1.0 - uvs[:, 1]

        shift = choose_uv_shift(positions, uvs, config.position_epsilon, config.uv_shift_mode)
        if shift:
            self.diagnostics.debug(STAGE, f"Using +1 UV shift for mesh {mesh_ref}")
            uvs = np.concatenate([uvs[1:], uvs[-1:]])
        result.uv_shift = shift

        pos_list = block["position"].tolist()
        nrm_list = block["normal"].tolist()
        weights = block["weight"].tolist()
        extras = block["extra"].tolist()
        flags = block["flag"].tolist()
        uv_list = uvs.tolist()

        result.vertices = [
            GeometryVertex(
                position=tuple(pos_list[i]),
                normal=tuple(nrm_list[i]),
                texcoord=tuple(uv_list[i]),
                skin=(weights[i], 0.0, 0.0),
                colour=WHITE,
                raw_flag=flags[i],
                raw_extra=tuple(extras[i]),
            )
            for i in range(total)
        ]

        finite = bool(np.all(np.isfinite(positions)))
        nonzero = int(np.count_nonzero(np.any(np.abs(positions) > config.nonzero_threshold, axis=1)))
        if total >= 3 and nonzero >= 3 and finite:
            box = is_box_like(positions, config.box_quantize_scale, config.box_max_points)
            if box:
                self.diagnostics.debug(STAGE, f"Mesh {mesh_ref} looks like bounds geometry, excluded")
            result.valid_for_render = not box
        else:
            self.diagnostics.debug(STAGE, f"Mesh {mesh_ref} has no usable positions, excluded")

        if strip_counts and reconcile_strip_counts(strip_counts, total, config.strip_hypotheses):
            result.strip_counts = strip_counts
            result.strip_flags = strip_flags
        return result

    # --- Fallback ---------------------------------------------------------

    def decode_fallback(self, stream: bytes) -> List[DecodedMesh]:
        """Read one generic packed block after every strip marker in the stream."""
        positions = find_all(stream, CONSOLE_MARKER)
        if not positions:
            self.diagnostics.warning(STAGE, "No mesh patterns found in stream")
            return []
        self.diagnostics.debug(STAGE, f"Found {len(positions)} marker(s)")

        meshes = []
        for pos in positions:
            _check_cancel(self.cancel_event)
            try:
                vertices = self._parse_fallback_block(stream, pos + len(CONSOLE_MARKER))
            except TruncatedDataError as e:
                self.diagnostics.debug(STAGE, f"Fallback block at {pos} rejected: {e}")
                continue
            if vertices:
                meshes.append(DecodedMesh(vertices=vertices, source_offset=pos))

        self.diagnostics.info(STAGE, f"Fallback parsing complete, found {len(meshes)} mesh(es)")
        return meshes

    def _parse_fallback_block(self, stream: bytes, offset: int) -> Optional[List[GeometryVertex]]:
        r = BinaryReader(stream, offset)
        count = r.read_uint32()
        if count == 0 or count > self.config.fallback_max_vertices:
            return None
        r.skip(32)
        r.skip(4)   # UV tag

        r.require(count * 12, "positions")
        positions = list(struct.iter_unpack("<3f", r.read_bytes(count * 12)))
        if not all(np.isfinite(p).all() for p in positions):
            return None

        normal_pos = find_pattern(stream, FALLBACK_NORMAL_MARKER, r.tell())
        if normal_pos == -1:
            return None
        r.seek(normal_pos + 4)

        r.require(count * 4, "normals")
        packed = r.read_bytes(count * 4)
        r.skip(4)
        r.require(count * 8, "texcoords")
        texcoords = _fixed_uvs(r.read_bytes(count * 8), count)
        r.skip(4)
        r.require(count * 4, "colours")
        colours = r.read_bytes(count * 4)

        return [
            GeometryVertex(
                position=positions[i],
                normal=_unit3(packed, i * 4),
                texcoord=texcoords[i],
                colour=tuple(byte_to_unit(c) for c in colours[i * 4:i * 4 + 4]),
            )
            for i in range(count)
        ]


# =============================================================================
# PACKED CHANNEL HELPERS
# =============================================================================

def _unit3(data: bytes, offset: int) -> Tuple[float, float, float]:
    return (byte_to_unit(data[offset]), byte_to_unit(data[offset + 1]), byte_to_unit(data[offset + 2]))


def _fixed_uvs(data: bytes, count: int) -> List[Tuple[float, float]]:
    """s16 UV pairs at an 8-byte stride, 1/4096 fixed point, V flipped."""
    uvs = []
    for i in range(count):
        u, v = struct.unpack_from("<hh", data, i * 8)
        uvs.append((u / 4096.0, abs(v / 4096.0 - 1.0)))
    return uvs


def _remap_bone(index: int, shift: int, anim_index: int, anim_lists: Sequence[Sequence[int]]) -> int:
    """Map a strip-local bone index to the model's bone space via its anim-node list."""
    if anim_index != NO_ANIM_NODE_LIST and anim_index < len(anim_lists):
        nodes = anim_lists[anim_index]
        if index < len(nodes):
            return (nodes[index] + 1) << shift
    return index << shift


def decode_geometry(stream: bytes,
                    header: Union[ModelHeader, ExternalGeometryMetadata, None] = None,
                    model_bytes: Optional[bytes] = None,
                    config: Optional[DecoderConfig] = None,
                    diagnostics: Optional[Diagnostics] = None,
                    cancel_event=None) -> List[DecodedMesh]:
    """Decode a geometry stream (see GeometryStreamDecoder.decode)."""
    return GeometryStreamDecoder(config, diagnostics, cancel_event).decode(stream, header, model_bytes)
