"""
Triangle strip assembly.

Decoded vertex runs are triangle strips joined by connector (degenerate)
vertices. The per-strip vertex counts stored next to the geometry are not
reliable: depending on the file they include the connectors, or leave out
one or two connector vertices per strip boundary. StripAssembler picks the
reading that accounts for every vertex, or falls back to finding strip
boundaries from repeated positions.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from .config import DecoderConfig, STRIP_HYPOTHESES
from .diagnostics import Diagnostics
from .types import GeometryVertex

logger = logging.getLogger(__name__)

STAGE = "strips"

# Connector vertices between consecutive strips for each hypothesis
CONNECTOR_GAP = {
    "include": 0,
    "exclude1": 1,
    "exclude2": 2,
}


@dataclass
class TriangleList:
    """Flat index buffer (groups of three) plus assembly statistics."""
    indices: List[int] = field(default_factory=list)
    total: int = 0
    skipped: int = 0
    uv_mismatch: int = 0
    hypothesis: Optional[str] = None
    derived: bool = False

    @property
    def triangle_count(self) -> int:
        return len(self.indices) // 3

    def triangles(self) -> List[Tuple[int, int, int]]:
        idx = self.indices
        return [(idx[i], idx[i + 1], idx[i + 2]) for i in range(0, len(idx), 3)]


def same_position(a: GeometryVertex, b: GeometryVertex, epsilon: float = 1e-5) -> bool:
    pa, pb = a.position, b.position
    return (abs(pa[0] - pb[0]) < epsilon and
            abs(pa[1] - pb[1]) < epsilon and
            abs(pa[2] - pb[2]) < epsilon)


def same_texcoord(a: GeometryVertex, b: GeometryVertex, epsilon: float = 1e-5) -> bool:
    ta, tb = a.texcoord, b.texcoord
    return abs(ta[0] - tb[0]) < epsilon and abs(ta[1] - tb[1]) < epsilon


def reconcile_strip_counts(counts: Sequence[int], vertex_count: int,
                           hypotheses: Sequence[str] = STRIP_HYPOTHESES) -> Optional[str]:
    """Return the first hypothesis under which counts cover vertex_count exactly.

    include:  sum(counts) == vertex_count
    exclude2: two connector vertices between strips
    exclude1: one connector vertex between strips
    """
    if not counts:
        return None
    total = sum(counts)
    boundaries = len(counts) - 1
    for name in hypotheses:
        if total + CONNECTOR_GAP[name] * boundaries == vertex_count:
            return name
    return None


def derive_strip_ranges(vertices: Sequence[GeometryVertex], epsilon: float = 1e-5) -> List[Tuple[int, int]]:
    """Split a vertex run into (start, count) strips at repeated positions.

    Two duplicate pairs back to back are treated as a single connector.
    """
    ranges = []
    count = len(vertices)
    start = 0
    i = 0
    while i + 1 < count:
        if same_position(vertices[i], vertices[i + 1], epsilon):
            if i + 1 > start:
                ranges.append((start, i - start + 1))

            if i + 3 < count and same_position(vertices[i + 2], vertices[i + 3], epsilon):
                start = i + 2
                if start + 1 < count and same_position(vertices[start], vertices[start + 1], epsilon):
                    start += 1
                i = start
                continue

            start = i + 1
            i = start
            continue
        i += 1

    if start < count:
        ranges.append((start, count - start))
    return ranges


class StripAssembler:
    """Builds TriangleLists from strip-ordered vertex runs."""

    def __init__(self, config: Optional[DecoderConfig] = None,
                 diagnostics: Optional[Diagnostics] = None):
        self.config = config or DecoderConfig()
        self.diagnostics = diagnostics if diagnostics is not None else Diagnostics()

    def assemble(self, vertices: Sequence[GeometryVertex],
                 strip_counts: Optional[Sequence[int]] = None) -> TriangleList:
        """Triangulate vertices, trusting strip_counts only if they add up."""
        eps = self.config.position_epsilon
        result = TriangleList()

        if strip_counts:
            hypothesis = reconcile_strip_counts(strip_counts, len(vertices), self.config.strip_hypotheses)
            if hypothesis is None:
                ranges = derive_strip_ranges(vertices, eps)
                if ranges:
                    for start, count in ranges:
                        self._emit_strip(vertices, start, count, result)
                    result.derived = True
                    self.diagnostics.debug(
                        STAGE,
                        f"Strip counts (sum {sum(strip_counts)}) don't match {len(vertices)} vertices; "
                        "derived strips from degenerate connectors",
                    )

            if not result.derived:
                result.hypothesis = hypothesis
                gap = CONNECTOR_GAP[hypothesis or "include"]
                start = 0
                for count in strip_counts:
                    self._emit_strip(vertices, start, count, result)
                    start += count + gap
        else:
            ranges = derive_strip_ranges(vertices, eps)
            if ranges:
                for start, count in ranges:
                    self._emit_strip(vertices, start, count, result)
                result.derived = True
            else:
                self._emit_strip(vertices, 0, len(vertices), result)

        self.diagnostics.debug(
            STAGE,
            f"Degenerate triangles skipped: {result.skipped} of {result.total} "
            f"(uv mismatch: {result.uv_mismatch})",
            skipped=result.skipped, total=result.total,
        )
        return result

    def _emit_strip(self, vertices: Sequence[GeometryVertex], start: int, count: int,
                    result: TriangleList):
        if count < 3 or start + count > len(vertices):
            return

        eps = self.config.position_epsilon
        for i in range(count - 2):
            i0 = start + i
            i1 = i0 + 1
            i2 = i0 + 2
            result.total += 1

            v0, v1, v2 = vertices[i0], vertices[i1], vertices[i2]
            deg01 = same_position(v0, v1, eps)
            deg12 = same_position(v1, v2, eps)
            deg02 = same_position(v0, v2, eps)
            if deg01 or deg12 or deg02:
                result.skipped += 1
                if ((deg01 and not same_texcoord(v0, v1, eps)) or
                        (deg12 and not same_texcoord(v1, v2, eps)) or
                        (deg02 and not same_texcoord(v0, v2, eps))):
                    result.uv_mismatch += 1
                continue

            if i & 1 == 0:
                result.indices.extend((i0, i1, i2))
            else:
                result.indices.extend((i1, i0, i2))


def assemble(vertices: Sequence[GeometryVertex], strip_counts: Optional[Sequence[int]] = None,
             config: Optional[DecoderConfig] = None,
             diagnostics: Optional[Diagnostics] = None) -> TriangleList:
    """Triangulate a strip-ordered vertex run (see StripAssembler)."""
    return StripAssembler(config, diagnostics).assemble(vertices, strip_counts)
