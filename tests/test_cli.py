import json
import logging

import pytest

from builders import build_mdl3
from tyasset.cli import main


@pytest.fixture(autouse=True)
def reset_package_logger():
    yield
    logging.getLogger("tyasset").handlers.clear()


def test_list(pc_quad_archive, capsys):
    assert main(["list", pc_quad_archive]) == 0
    out = capsys.readouterr().out
    assert "Quad.mdl" in out
    assert "quad_tex.gtx" in out
    assert "3 file(s)" in out


def test_list_by_extension(pc_quad_archive, capsys):
    assert main(["list", pc_quad_archive, "--ext", "mdg"]) == 0
    out = capsys.readouterr().out
    assert "Quad.mdg" in out
    assert "Quad.mdl" not in out


def test_info(pc_quad_archive, capsys):
    assert main(["info", pc_quad_archive, "quad.mdl"]) == 0
    out = capsys.readouterr().out
    assert "Triangles:        2" in out
    assert "tex.dds" in out


def test_dump_to_stdout(pc_quad_archive, capsys):
    assert main(["--log-level", "WARNING", "dump", pc_quad_archive, "quad.mdl"]) == 0
    summary = json.loads(capsys.readouterr().out)
    assert summary["vertex_count"] == 4


def test_dump_to_file(pc_quad_archive, tmp_path):
    out = tmp_path / "quad.json"
    assert main(["dump", pc_quad_archive, "quad.mdl", "-o", str(out)]) == 0
    assert json.loads(out.read_text())["triangle_count"] == 2


def test_batch_reports_failures(write_archive, capsys):
    from builders import QUAD, build_pc_stream
    stream, _ = build_pc_stream([{"positions": QUAD}])
    path = write_archive([
        ("good.mdl", build_mdl3()),
        ("good.mdg", stream),
        ("orphan.mdl", build_mdl3()),
    ])
    assert main(["batch", path, "--workers", "2"]) == 1
    out = capsys.readouterr().out
    assert "OK   good.mdl" in out
    assert "FAIL orphan.mdl: NotFoundError" in out
    assert "Decoded 1/2 models (1 failed)" in out


def test_errors_return_nonzero(tmp_path):
    assert main(["list", str(tmp_path / "missing.rkv")]) == 1


def test_batch_dump_writes_summaries(pc_quad_archive, tmp_path):
    out_dir = tmp_path / "summaries"
    assert main(["batch", pc_quad_archive, "--dump", "--output-dir", str(out_dir)]) == 0
    summary = json.loads((out_dir / "Quad.json").read_text())
    assert summary["mesh_count"] == 1


def test_invalid_uv_shift_is_a_usage_error(pc_quad_archive, capsys):
    with pytest.raises(SystemExit) as exc:
        main(["--uv-shift", "sideways", "info", pc_quad_archive, "quad.mdl"])
    assert exc.value.code == 2
    assert "invalid UV shift mode 'sideways'" in capsys.readouterr().err


def test_invalid_uv_shift_from_environment_is_a_usage_error(pc_quad_archive, monkeypatch, capsys):
    from tyasset import config
    monkeypatch.setattr(config, "UV_SHIFT", "bogus")
    with pytest.raises(SystemExit) as exc:
        main(["dump", pc_quad_archive, "quad.mdl"])
    assert exc.value.code == 2
    assert "TY_UV_SHIFT" in capsys.readouterr().err


def test_uv_shift_option_is_accepted(pc_quad_archive, capsys):
    assert main(["--uv-shift", "never", "info", pc_quad_archive, "quad.mdl"]) == 0
    assert "Triangles:        2" in capsys.readouterr().out
