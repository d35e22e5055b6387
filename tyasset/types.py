"""
Shared data types for TY asset parsing.

These are the value dataclasses passed between the archive, header,
geometry and model layers.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Tuple


@dataclass
class Vector:
    """3D Vector."""
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0

    def as_tuple(self) -> Tuple[float, float, float]:
        return (self.x, self.y, self.z)


@dataclass
class Bounds:
    """Axis-aligned box: corner position, size, and a third vector of unknown use."""
    position: Vector = field(default_factory=Vector)
    size: Vector = field(default_factory=Vector)
    origin: Vector = field(default_factory=Vector)


@dataclass
class Collider:
    """Sphere collider (position + radius)."""
    position: Vector
    radius: float


@dataclass
class Bone:
    """Bone rest position."""
    position: Vector


WHITE = (1.0, 1.0, 1.0, 1.0)


@dataclass
class GeometryVertex:
    """One decoded vertex.

    skin holds (modifier/weight, bone A, bone B); the meaning of the first
    channel is not fully understood. raw_flag and raw_extra keep the PC
    encoding's unexplained fields so nothing read from disk is thrown away.
    """
    position: Tuple[float, float, float]
    normal: Tuple[float, float, float] = (0.0, 0.0, 1.0)
    texcoord: Tuple[float, float] = (0.0, 0.0)
    skin: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    colour: Tuple[float, float, float, float] = WHITE
    raw_flag: Optional[int] = None
    raw_extra: Optional[Tuple[float, float]] = None


@dataclass
class DecodedMesh:
    """Vertex run produced by the geometry decoder.

    strip_counts is informational and may not agree with the vertex list;
    the strip assembler decides whether to trust it.
    """
    vertices: List[GeometryVertex]
    strip_counts: Optional[List[int]] = None
    texture_index: int = 0
    component_index: int = 0
    source_offset: int = 0
    strip_flags: Optional[List[int]] = None
