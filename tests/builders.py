"""Synthetic TY files for tests, packed with struct."""

import struct

MDL2 = 843859021
MDL3 = 0x334C444D
MARKER = b"\x00\x80\x02\x6C"

MESH_REF = 0x10


def align4(n):
    return (n + 3) & ~3


# --- Archives ---------------------------------------------------------------

def build_rkv1(files, folders=0):
    """files: list of (name, bytes). Data first, then file and folder tables, then trailer."""
    body = b""
    records = b""
    for name, data in files:
        offset = len(body)
        body += data
        records += struct.pack(
            "<32sIIIIII8x",
            name.encode("latin-1"), 0, len(data), 0, offset, 0, 0x1234,
        )
    return body + records + b"\x00" * (256 * folders) + struct.pack("<II", len(files), folders)


def build_rkv2(files):
    header_size = 28
    body = b""
    offsets = []
    for _name, data in files:
        offsets.append(header_size + len(body))
        body += data

    names = b""
    name_offsets = []
    for name, _data in files:
        name_offsets.append(len(names))
        names += name.encode("latin-1") + b"\x00"

    info_offset = header_size + len(body)
    entries = b""
    for (name, data), data_off, name_off in zip(files, offsets, name_offsets):
        entries += struct.pack("<IIIII", name_off, 0, len(data), data_off, 0)

    header = struct.pack("<4sIIIIII", b"RKV2", len(files), len(names), 0, 0, info_offset, 0)
    return header + body + entries + names


# --- Model headers ----------------------------------------------------------

def build_mdl3(component_count=1, texture_names=("tex",), cells=None,
               anim_lists=None, component_names=None, texture_count=None):
    """Current-generation header.

    cells: {(texture_index, component_index): mesh_ref}; defaults to a
    single cell (0, 0) pointing at MESH_REF.
    """
    if cells is None:
        cells = {(0, 0): MESH_REF}
    if texture_count is None:
        texture_count = len(texture_names)
    anim_lists = anim_lists or []

    tail = bytearray()
    base = 0x70

    def here():
        return base + len(tail)

    # texture names
    name_offsets = []
    for name in texture_names:
        name_offsets.append(here())
        tail += name.encode("latin-1") + b"\x00"
    while len(tail) % 4:
        tail += b"\x00"

    texture_list = here()
    for off in name_offsets:
        tail += struct.pack("<I", off)

    component_names = component_names or []
    comp_name_offsets = []
    for name in component_names:
        comp_name_offsets.append(here())
        tail += name.encode("latin-1") + b"\x00"
    while len(tail) % 4:
        tail += b"\x00"

    comp_desc = 0
    if component_names:
        comp_desc = here()
        for i in range(component_count):
            name_off = comp_name_offsets[i] if i < len(comp_name_offsets) else 0
            desc = struct.pack("<3f4x3f4x3f", float(i), 0.0, 0.0, 1.0, 1.0, 1.0, 0.0, 0.0, 0.0)
            desc += struct.pack("<4xIH10x", name_off, 0)
            tail += desc

    anim_offset = 0
    if anim_lists:
        anim_offset = here()
        for nodes in anim_lists:
            block = bytes([len(nodes)]) + bytes(nodes)
            tail += block + b"\x00" * (0x80 - len(block))

    lookup = here()
    for ti in range(texture_count):
        for ci in range(component_count):
            tail += struct.pack("<i", cells.get((ti, ci), 0))

    head = bytearray(0x70)
    struct.pack_into("<IHHHHHHH", head, 0, MDL3, component_count, texture_count, 0, 0, 0, 1, len(anim_lists))
    struct.pack_into("<H", head, 0x1E, 1)
    struct.pack_into("<3f", head, 0x30, -1.0, -2.0, -3.0)
    struct.pack_into("<3f", head, 0x40, 2.0, 4.0, 6.0)
    struct.pack_into("<H", head, 0x50, comp_desc)
    struct.pack_into("<I", head, 0x54, texture_list)
    struct.pack_into("<I", head, 0x64, anim_offset)
    struct.pack_into("<I", head, 0x68, lookup)
    return bytes(head) + bytes(tail)


def pack_segment(vertices):
    """vertices: list of ((x, y, z), (u, v))."""
    count = len(vertices)
    out = bytearray(52)
    struct.pack_into("<I", out, 12, count)
    for pos, _uv in vertices:
        out += struct.pack("<3f", *pos)
    out += b"\x00" * 4
    for _ in vertices:
        out += bytes([0, 0, 255, 0])
    out += b"\x00" * 4
    for _pos, (u, v) in vertices:
        out += struct.pack("<3h2b", int(u * 4096), int((1.0 - v) * 4096), 4096, 1, 2)
    out += b"\x00" * 4
    for _ in vertices:
        out += bytes([255, 128, 0, 255])
    return bytes(out)


def build_mdl2(segment_vertices, name="box01", material="wood",
               colliders=((0.0, 1.0, 0.0, 2.5),), bones=((0.0, 0.5, 0.0),),
               signature=MDL2):
    """Legacy header with one subobject holding one mesh of one segment."""
    header_size = 76
    sub_off = header_size
    mesh_off = sub_off + 80
    collider_off = mesh_off + 16
    bone_off = collider_off + 32 * len(colliders)
    strings_off = bone_off + 16 * len(bones)
    name_off = strings_off
    material_off = name_off + len(name) + 1
    seg_off = align4(material_off + len(material) + 1)

    out = bytearray(header_size)
    struct.pack_into("<IHHHHIII", out, 0, signature, 1, 1, len(colliders), len(bones),
                     sub_off, collider_off, bone_off)
    struct.pack_into("<3f4x3f4x3f", out, 32, 0.0, 0.0, 0.0, 1.0, 1.0, 1.0, 0.0, 0.0, 0.0)
    struct.pack_into("<I", out, 68, name_off)

    sub = bytearray(80)
    struct.pack_into("<3f4x3f4x3f", sub, 0, 0.0, 0.0, 0.0, 1.0, 1.0, 1.0, 0.0, 0.0, 0.0)
    struct.pack_into("<III", sub, 48, name_off, material_off, max(0, len(segment_vertices) - 2))
    struct.pack_into("<HI", sub, 66, 1, mesh_off)
    out += sub

    out += struct.pack("<IIII", material_off, seg_off, 0, 1)
    for x, y, z, r in colliders:
        out += struct.pack("<4f16x", x, y, z, r)
    for x, y, z in bones:
        out += struct.pack("<3f4x", x, y, z)
    out += name.encode("latin-1") + b"\x00" + material.encode("latin-1") + b"\x00"
    out += b"\x00" * (seg_off - len(out))
    out += pack_segment(segment_vertices)
    return bytes(out)


# --- Geometry streams -------------------------------------------------------

QUAD = [(1.0, 1.0, 5.0), (2.0, 1.0, 5.0), (1.0, 2.0, 5.0), (3.0, 2.0, 5.0)]
CUBE = [(x, y, z) for x in (-1.0, 1.0) for y in (-1.0, 1.0) for z in (-1.0, 1.0)]


def pc_vertex(pos, uv=(0.25, 0.75), normal=(0.0, 0.0, 1.0), weight=0.0, flag=0):
    return struct.pack("<I2f3ff2f3f", flag, uv[0], 1.0 - uv[1], *pos, weight, 0.0, 0.0, *normal)


def build_pc_stream(meshes):
    """meshes: list of dicts with positions, optional duplicate, strips, uvs, next.

    Mesh records are laid out from MESH_REF, each followed by its strip
    descriptors; the vertex block follows the last record. "next" is the
    index of the mesh the record links to.
    """
    out = bytearray(MESH_REF)
    refs = []
    cursor = MESH_REF
    for mesh in meshes:
        refs.append(cursor)
        strips = mesh.get("strips", [len(mesh["positions"])])
        cursor = align4(cursor + 16 + 2 * len(strips))

    for i, mesh in enumerate(meshes):
        positions = mesh["positions"]
        duplicate = mesh.get("duplicate", 0)
        strips = mesh.get("strips", [len(positions)])
        next_index = mesh.get("next")
        next_ref = refs[next_index] if next_index is not None else 0
        out += struct.pack("<HHHHH2xi", len(positions) - duplicate, 0, duplicate, len(strips), 0, next_ref)
        out += b"".join(struct.pack("<H", s | (mesh.get("strip_flag", 0) << 8)) for s in strips)
        while len(out) % 4:
            out += b"\x00"

    for mesh in meshes:
        uvs = mesh.get("uvs") or [(0.1 * i, 0.2 * i) for i in range(len(mesh["positions"]))]
        for pos, uv in zip(mesh["positions"], uvs):
            out += pc_vertex(pos, uv)
    return bytes(out), refs


def console_strip(positions, fmt=0x00, bones=None, uvs=None):
    """One strip starting with its marker. bones: per-vertex (a, b) local indices."""
    count = len(positions)
    uvs = uvs or [(0.5, 0.5)] * count
    bones = bones or [(0, 0)] * count
    out = bytearray(MARKER)
    out += bytes([count, 0, 0, 0])
    out += b"\x00" * (32 + 0x27)
    for pos in positions:
        out += struct.pack("<3f", *pos)
    out += b"\x00\x00"
    out += bytes([0x00, fmt])

    def fixed_uvs(with_bone_b):
        block = b""
        for (u, v), (_a, b) in zip(uvs, bones):
            block += struct.pack("<hhhH", int(u * 4096), int((1.0 - v) * 4096), 0,
                                 (b << 2) if with_bone_b else 0)
        return block

    if fmt == 0x6A:
        out += b"".join(bytes([0, 0, 255, 0]) for _ in positions)
        out += b"\x00" * 4 + b"\x00" * (count % 4)
        out += fixed_uvs(False)
    elif fmt == 0x65:
        out += fixed_uvs(False)
    else:
        out += b"".join(bytes([0, 0, 255, a << 1]) for a, _b in bones)
        out += b"\x00" * 4
        out += fixed_uvs(True)
    out += b"\x00" * 4
    out += b"".join(bytes([255, 0, 0, 255]) for _ in positions)
    return bytes(out)


def build_console_stream(strips, anim_index=0xFFFF):
    """One mesh record at MESH_REF followed by its strips."""
    out = bytearray(MESH_REF)
    out += struct.pack("<HHHHH2xi", 0, 0, 0, len(strips), anim_index, 0)
    for strip in strips:
        out += strip
    return bytes(out)


def build_fallback_stream(positions, lead=b"\x00" * 8):
    count = len(positions)
    out = bytearray(lead)
    out += MARKER
    out += struct.pack("<I", count)
    out += b"\x00" * 36
    for pos in positions:
        out += struct.pack("<3f", *pos)
    out += b"\x03\x80\x00\x00"
    out += b"".join(bytes([0, 0, 255, 0]) for _ in positions)
    out += b"\x00" * 4
    out += b"".join(struct.pack("<hhhh", 2048, 2048, 0, 0) for _ in positions)
    out += b"\x00" * 4
    out += b"".join(bytes([255, 255, 255, 255]) for _ in positions)
    return bytes(out)
