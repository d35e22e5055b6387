"""
Fixed-size record layouts for the TY container and model formats.

Offsets were recovered by inspecting shipped files; fields marked
"reserved" or "unknown" are read but never interpreted.
"""

from construct import (
    Struct, Bytes, Int16ul, Int32ul, Int32sl, Float32l, Padding,
    ConstructError,
)
import numpy as np

from .errors import TruncatedDataError

# =============================================================================
# PRIMITIVE TYPES
# =============================================================================

FVector = Struct(
    "x" / Float32l,
    "y" / Float32l,
    "z" / Float32l,
)

# position, size and origin, each followed by a 4-byte pad (w component)
FBounds = Struct(
    "position" / FVector,
    Padding(4),
    "size" / FVector,
    Padding(4),
    "origin" / FVector,
)

# =============================================================================
# ARCHIVE CONTAINERS
# =============================================================================

RKV2_MAGIC = b"RKV2"

# RKV1: trailing {fileCount, folderCount}
Rkv1Trailer = Struct(
    "file_count" / Int32ul,
    "folder_count" / Int32ul,
)

RKV1_RECORD_SIZE = 64
RKV1_FOLDER_SIZE = 256

Rkv1Record = Struct(
    "name" / Bytes(32),
    "folder" / Int32ul,         # @32
    "size" / Int32ul,           # @36
    "reserved_1" / Int32ul,     # @40
    "offset" / Int32ul,         # @44
    "reserved_2" / Int32ul,     # @48
    "date" / Int32ul,           # @52
    Padding(8),
)

# RKV2: magic + six u32
Rkv2Header = Struct(
    "magic" / Bytes(4),
    "file_count" / Int32ul,
    "name_blob_size" / Int32ul,
    "fullname_file_count" / Int32ul,
    "reserved_1" / Int32ul,
    "info_offset" / Int32ul,
    "reserved_2" / Int32ul,
)

RKV2_ENTRY_SIZE = 20
RKV2_NAME_MAX = 0x100

Rkv2Entry = Struct(
    "name_offset" / Int32ul,
    "reserved" / Int32ul,
    "size" / Int32ul,
    "offset" / Int32ul,
    "crc" / Int32ul,
)

# =============================================================================
# MODEL HEADERS
# =============================================================================

MDL2_SIGNATURE = 843859021      # b"MDL2" little-endian
MDL3_SIGNATURE = 0x334C444D     # b"MDL3" little-endian

LegacyModelHeader = Struct(
    "signature" / Int32ul,
    "frag_count" / Int16ul,
    "subobject_count" / Int16ul,
    "collider_count" / Int16ul,
    "bone_count" / Int16ul,
    "subobject_offset" / Int32ul,
    "collider_offset" / Int32ul,
    "bone_offset" / Int32ul,
    Padding(8),
    "bounds" / FBounds,             # @32
)

LEGACY_NAME_OFFSET_FIELD = 68

SUBOBJECT_SIZE = 80

Subobject = Struct(
    "bounds" / FBounds,
    Padding(4),
    "name_offset" / Int32ul,        # @48
    "material_offset" / Int32ul,    # @52
    "triangle_count" / Int32ul,     # @56
    Padding(6),
    "mesh_count" / Int16ul,         # @66
    "mesh_offset" / Int32ul,        # @68
    Padding(8),
)

MESH_SIZE = 16

MeshEntry = Struct(
    "material_offset" / Int32ul,
    "segment_offset" / Int32ul,
    "reserved" / Int32ul,
    "segment_count" / Int32ul,
)

SEGMENT_VERTEX_DATA = 52
SEGMENT_COUNT_FIELD = 12

CurrentModelHeader = Struct(
    "signature" / Int32ul,
    "component_count" / Int16ul,            # 0x04
    "texture_count" / Int16ul,              # 0x06
    "anim_node_count" / Int16ul,            # 0x08
    "ref_point_count" / Int16ul,            # 0x0A
    "unknown_0c" / Int16ul,
    "mesh_count" / Int16ul,                 # 0x0E
    "anim_node_list_count" / Int16ul,       # 0x10
    Padding(12),
    "strip_count" / Int16ul,                # 0x1E
    Padding(16),
    "bounds_position" / FVector,            # 0x30
    Padding(4),
    "bounds_size" / FVector,                # 0x40
    Padding(4),
    "component_desc_offset" / Int16ul,      # 0x50
    Padding(2),
    "texture_list_offset" / Int32ul,        # 0x54
    "ref_points_offset" / Int32ul,          # 0x58
    "anim_node_data_offset" / Int16ul,      # 0x5C
    Padding(6),
    "anim_node_lists_offset" / Int32ul,     # 0x64
    "object_lookup_table" / Int32ul,        # 0x68
)

COMPONENT_DESC_SIZE = 0x40

ComponentDescriptor = Struct(
    "bounds" / FBounds,
    Padding(4),
    "name_offset" / Int32ul,                # 0x30
    "string_table_offset" / Int16ul,        # 0x34
    Padding(10),
)

COLLIDER_SIZE = 32

ColliderRecord = Struct(
    "position" / FVector,
    "radius" / Float32l,
    Padding(16),
)

BONE_SIZE = 16

BoneRecord = Struct(
    "position" / FVector,
    Padding(4),
)

ANIM_NODE_LIST_SIZE = 0x80
ANIM_NODE_LIST_COUNT_FIELD = 0x10

# =============================================================================
# GEOMETRY STREAM
# =============================================================================

CONSOLE_MARKER = b"\x00\x80\x02\x6C"
FALLBACK_NORMAL_MARKER = b"\x03\x80"

# Shared by console and PC mesh records
MeshRecordHeader = Struct(
    "base_count" / Int16ul,                 # 0x0 (PC only)
    "unknown_2" / Int16ul,
    "duplicate_count" / Int16ul,            # 0x4 (PC only)
    "strip_count" / Int16ul,                # 0x6
    "anim_node_list_index" / Int16ul,       # 0x8 (console only)
    Padding(2),
    "next" / Int32sl,                       # 0xC
)

MESH_RECORD_SIZE = 0x10
MESH_NEXT_FIELD = 0xC

# PC interleaved vertex (48 bytes)
PC_VERTEX_DTYPE = np.dtype([
    ("flag", "<u4"),
    ("uv", "<f4", (2,)),
    ("position", "<f4", (3,)),
    ("weight", "<f4"),
    ("extra", "<f4", (2,)),
    ("normal", "<f4", (3,)),
])

assert PC_VERTEX_DTYPE.itemsize == 48


def parse_at(layout: Struct, data: bytes, offset: int, what: str = "record"):
    """Parse a fixed-size layout at an absolute offset.

    Raises TruncatedDataError when the record would run past the buffer.
    """
    size = layout.sizeof()
    if offset < 0 or offset + size > len(data):
        raise TruncatedDataError(
            f"{what} at {offset} needs {size} bytes, buffer has {len(data)}"
        )
    try:
        return layout.parse(data[offset:offset + size])
    except ConstructError as e:
        raise TruncatedDataError(f"Could not parse {what} at {offset}: {e}") from e


def vector_tuple(container) -> tuple:
    return (container.x, container.y, container.z)
