import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import builders  # noqa: E402
from tyasset.config import DecoderConfig  # noqa: E402
from tyasset.diagnostics import Diagnostics  # noqa: E402


@pytest.fixture
def config():
    return DecoderConfig()


@pytest.fixture
def diagnostics():
    return Diagnostics()


@pytest.fixture
def write_archive(tmp_path):
    """Write a synthetic archive and return its path."""
    def _write(files, kind="rkv1", name="data.rkv"):
        path = tmp_path / name
        if kind == "rkv2":
            path.write_bytes(builders.build_rkv2(files))
        else:
            path.write_bytes(builders.build_rkv1(files))
        return str(path)
    return _write


@pytest.fixture
def pc_quad_archive(write_archive):
    """Current-generation model with one PC-encoded quad (4 vertices, one strip)."""
    stream, _refs = builders.build_pc_stream([{"positions": builders.QUAD}])
    return write_archive([
        ("Quad.mdl", builders.build_mdl3()),
        ("Quad.mdg", stream),
        ("quad_tex.gtx", b"\x01\x02\x03"),
    ])
