import pytest

from tyasset.config import DecoderConfig
from tyasset.strips import StripAssembler, assemble, derive_strip_ranges, reconcile_strip_counts
from tyasset.types import GeometryVertex


def run(n, start=0):
    """n vertices at distinct positions."""
    return [GeometryVertex(position=(float(start + i), float((start + i) % 3), 0.0)) for i in range(n)]


def test_single_strip_winding_alternates():
    result = assemble(run(5), [5])
    assert result.triangles() == [(0, 1, 2), (2, 1, 3), (2, 3, 4)]
    assert result.hypothesis == "include"
    assert not result.derived


@pytest.mark.format_ambiguous
@pytest.mark.parametrize("hypothesis,extra", [("include", 0), ("exclude2", 2), ("exclude1", 1)])
def test_strip_hypothesis_selection(hypothesis, extra):
    counts = [4, 5, 3]
    vertex_count = sum(counts) + extra * (len(counts) - 1)
    vertices = run(vertex_count)

    assert reconcile_strip_counts(counts, vertex_count) == hypothesis
    result = StripAssembler().assemble(vertices, counts)
    assert result.hypothesis == hypothesis
    assert result.triangle_count == sum(counts) - 2 * len(counts)


@pytest.mark.format_ambiguous
def test_exclude_hypothesis_skips_connectors():
    # strip A (0..3), connectors 4 and 5, strip B (6..9)
    result = assemble(run(10), [4, 4])
    assert result.hypothesis == "exclude2"
    used = set(result.indices)
    assert 4 not in used and 5 not in used


def test_hypothesis_order_is_configurable():
    counts = [3, 3]
    # 7 vertices: only exclude1 fits
    assert reconcile_strip_counts(counts, 7) == "exclude1"
    assert reconcile_strip_counts(counts, 7, ("include", "exclude2")) is None
    assert reconcile_strip_counts([], 7) is None


def test_degenerate_pair_costs_one_triangle():
    clean = run(6)
    with_pair = run(6)
    with_pair[5] = GeometryVertex(position=with_pair[4].position)

    a = assemble(clean, [6])
    b = assemble(with_pair, [6])
    assert a.triangle_count == 4
    assert b.triangle_count == a.triangle_count - 1
    assert b.skipped == 1
    assert b.total == 4


def test_degenerate_uv_mismatch_is_counted():
    vertices = run(4)
    vertices[3] = GeometryVertex(position=vertices[2].position, texcoord=(0.5, 0.5))
    result = assemble(vertices, [4])
    assert result.skipped == 1
    assert result.uv_mismatch == 1


def test_unreconciled_counts_derive_strips_from_duplicates():
    # two strips joined by a repeated vertex: 0 1 2 2' 3 4 5
    first = run(3)
    second = run(3, start=10)
    vertices = first + [GeometryVertex(position=first[-1].position)] + second

    assert derive_strip_ranges(vertices) == [(0, 3), (3, 4)]
    result = assemble(vertices, [50])
    assert result.derived
    assert result.hypothesis is None
    # one triangle from the first strip, two from the second
    assert result.triangles()[0] == (0, 1, 2)
    assert result.triangle_count == 3


def test_no_counts_and_no_duplicates_is_one_strip():
    result = assemble(run(4))
    assert result.derived
    assert result.triangle_count == 2


def test_short_strips_emit_nothing():
    result = assemble(run(2), [2])
    assert result.indices == []
    assert result.total == 0


def test_epsilon_comes_from_config():
    vertices = run(4)
    vertices[3] = GeometryVertex(position=(vertices[2].position[0] + 0.01,) + vertices[2].position[1:])
    loose = StripAssembler(DecoderConfig(position_epsilon=0.1)).assemble(vertices, [4])
    strict = StripAssembler(DecoderConfig()).assemble(vertices, [4])
    assert loose.triangle_count == 1
    assert strict.triangle_count == 2


def test_derivation_is_reported_to_callers_channel():
    from tyasset.diagnostics import Diagnostics
    diagnostics = Diagnostics()
    first = run(3)
    vertices = first + [GeometryVertex(position=first[-1].position)] + run(3, start=10)
    assembler = StripAssembler(diagnostics=diagnostics)
    assert assembler.diagnostics is diagnostics
    assembler.assemble(vertices, [50])
    assert any("derived strips" in e.message for e in diagnostics.events)
