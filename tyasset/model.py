"""
Model assembly.

Ties the pipeline together: header bytes come out of an Archive, the header
is parsed, the matching geometry stream (if any) is decoded, and every
vertex run is triangulated into a RenderMesh ready for a renderer or
exporter.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from .archive import Archive
from .config import DecoderConfig
from .diagnostics import Diagnostics
from .errors import NotFoundError
from .geometry import GeometryStreamDecoder
from .model_header import InlineGeometry, ModelHeader, ModelHeaderParser
from .strips import StripAssembler
from .types import Bone, Bounds, Collider, DecodedMesh, GeometryVertex

logger = logging.getLogger(__name__)

STAGE = "model"

TEXTURE_EXTENSION = ".dds"
GEOMETRY_EXTENSION = ".mdg"


@dataclass
class RenderMesh:
    """One drawable mesh: vertices, triangle indices and a material."""
    vertices: List[GeometryVertex]
    indices: List[int]
    material_name: str = ""
    texture_index: int = 0
    component_index: int = 0

    @property
    def texture_file(self) -> str:
        """Archive name of the texture this mesh samples, or '' if untextured."""
        return self.material_name + TEXTURE_EXTENSION if self.material_name else ""

    @property
    def triangle_count(self) -> int:
        return len(self.indices) // 3

    def as_arrays(self) -> Dict[str, np.ndarray]:
        """Vertex channels as float32 arrays plus an (N, 3) uint32 index array."""
        verts = self.vertices
        return {
            "position": np.array([v.position for v in verts], dtype=np.float32).reshape(-1, 3),
            "normal": np.array([v.normal for v in verts], dtype=np.float32).reshape(-1, 3),
            "texcoord": np.array([v.texcoord for v in verts], dtype=np.float32).reshape(-1, 2),
            "colour": np.array([v.colour for v in verts], dtype=np.float32).reshape(-1, 4),
            "indices": np.array(self.indices, dtype=np.uint32).reshape(-1, 3),
        }


@dataclass
class Model:
    name: str
    bounds: Bounds
    meshes: List[RenderMesh] = field(default_factory=list)
    colliders: List[Collider] = field(default_factory=list)
    bones: List[Bone] = field(default_factory=list)
    component_bounds: List[Bounds] = field(default_factory=list)
    header: Optional[ModelHeader] = None
    geometry_format: str = "inline"

    @property
    def vertex_count(self) -> int:
        return sum(len(m.vertices) for m in self.meshes)

    @property
    def triangle_count(self) -> int:
        return sum(m.triangle_count for m in self.meshes)

    def summary(self) -> Dict[str, Any]:
        """JSON-serializable description of the model."""
        def vec(v):
            return [v.x, v.y, v.z]

        return {
            "name": self.name,
            "strategy": self.header.strategy if self.header else "",
            "geometry_format": self.geometry_format,
            "bounds": {
                "position": vec(self.bounds.position),
                "size": vec(self.bounds.size),
            },
            "mesh_count": len(self.meshes),
            "vertex_count": self.vertex_count,
            "triangle_count": self.triangle_count,
            "meshes": [
                {
                    "material": m.material_name,
                    "texture_file": m.texture_file,
                    "texture_index": m.texture_index,
                    "component_index": m.component_index,
                    "vertices": len(m.vertices),
                    "triangles": m.triangle_count,
                }
                for m in self.meshes
            ],
            "colliders": [{"position": vec(c.position), "radius": c.radius} for c in self.colliders],
            "bones": [{"position": vec(b.position)} for b in self.bones],
        }


def geometry_stream_name(model_name: str) -> str:
    """model.mdl -> model.mdg"""
    base, _ = os.path.splitext(model_name)
    return base + GEOMETRY_EXTENSION


def _inline_runs(geometry: InlineGeometry) -> List[Tuple[DecodedMesh, str]]:
    """One vertex run per inline mesh; each segment is one strip."""
    runs = []
    for si, subobject in enumerate(geometry.subobjects):
        for mesh in subobject.meshes:
            vertices = []
            counts = []
            for segment in mesh.segments:
                vertices.extend(segment.vertices)
                counts.append(len(segment.vertices))
            if vertices:
                runs.append((DecodedMesh(vertices, counts, component_index=si),
                             mesh.material or subobject.material))
    return runs


class ModelLoader:
    """Loads complete models from an Archive.

    Args:
        archive: open container holding the .mdl (and optional .mdg) files
        config: decoder tunables
        diagnostics: channel receiving recovered failures from every stage
        cancel_event: optional object with is_set(), forwarded to the decoder
    """

    def __init__(self, archive: Archive, config: Optional[DecoderConfig] = None,
                 diagnostics: Optional[Diagnostics] = None, cancel_event=None):
        self.archive = archive
        self.config = config or DecoderConfig()
        self.diagnostics = diagnostics if diagnostics is not None else Diagnostics()
        self.cancel_event = cancel_event

    def load(self, name: str) -> Model:
        """Load one model by archive name.

        Raises:
            NotFoundError: the .mdl is missing, or a current-generation
                header has no geometry stream
            MalformedHeaderError: no header strategy accepted the data
            AmbiguousGeometryError: a stream exists but holds no usable mesh
        """
        model_bytes = self.archive.get_file_data(name)
        header = ModelHeaderParser(self.config, self.diagnostics).parse(model_bytes)

        stream_name = geometry_stream_name(name)
        stream = self.archive.get_file_data(stream_name) if stream_name in self.archive else None

        decoder = GeometryStreamDecoder(self.config, self.diagnostics, self.cancel_event)
        runs: List[Tuple[DecodedMesh, str]] = []
        geometry_format = "inline"
        component_bounds: List[Bounds] = []

        if header.is_external:
            metadata = header.geometry
            component_bounds = [c.bounds for c in metadata.components]
            if stream is None:
                raise NotFoundError(f"Geometry stream not found for current-generation model: {stream_name}")
            decoded = decoder.decode(stream, metadata, model_bytes)
            runs = [(mesh, metadata.texture_name(mesh.texture_index)) for mesh in decoded]
            geometry_format = decoder.platform
        else:
            geometry = header.geometry
            component_bounds = [s.bounds for s in geometry.subobjects]
            if stream is not None:
                decoded = decoder.decode_fallback(stream)
                if decoded:
                    material = geometry.subobjects[0].material if geometry.subobjects else ""
                    runs = [(mesh, material) for mesh in decoded]
                    geometry_format = "fallback"
                else:
                    self.diagnostics.warning(
                        STAGE, f"{stream_name} holds no recognizable meshes, using inline geometry"
                    )
            if not runs:
                runs = _inline_runs(geometry)

        assembler = StripAssembler(self.config, self.diagnostics)
        meshes = []
        for decoded_mesh, material in runs:
            triangles = assembler.assemble(decoded_mesh.vertices, decoded_mesh.strip_counts)
            if not triangles.indices:
                self.diagnostics.debug(
                    STAGE, f"Mesh at {decoded_mesh.source_offset} produced no triangles, dropped"
                )
                continue
            meshes.append(RenderMesh(
                vertices=decoded_mesh.vertices,
                indices=triangles.indices,
                material_name=material,
                texture_index=decoded_mesh.texture_index,
                component_index=decoded_mesh.component_index,
            ))

        model = Model(
            name=header.name or os.path.splitext(name)[0],
            bounds=header.bounds,
            meshes=meshes,
            colliders=header.colliders,
            bones=header.bones,
            component_bounds=component_bounds,
            header=header,
            geometry_format=geometry_format,
        )
        logger.info(
            f"Loaded {name}: {len(meshes)} meshes, {model.vertex_count} vertices, "
            f"{model.triangle_count} triangles ({geometry_format})"
        )
        return model


def load_model(archive: Archive, name: str, config: Optional[DecoderConfig] = None,
               diagnostics: Optional[Diagnostics] = None, cancel_event=None) -> Model:
    """Load a model from an archive (see ModelLoader.load)."""
    return ModelLoader(archive, config, diagnostics, cancel_event).load(name)
