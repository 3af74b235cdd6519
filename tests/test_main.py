"""Tests for the command-line entry point."""

import json

import numpy as np
import pytest
import trimesh

from fur_mask_baker import __version__
from fur_mask_baker.__main__ import build_parser, main
from fur_mask_baker.core.bake_job import BakeJob, BakeState, BakeStatus


@pytest.fixture
def quad_glb(tmp_path):
    vertices = np.array([(0, 0, 0), (1, 0, 0), (1, 1, 0), (0, 1, 0)], dtype=np.float64)
    visual = trimesh.visual.TextureVisuals(uv=vertices[:, :2].copy())
    mesh = trimesh.Trimesh(vertices=vertices, faces=[[0, 1, 2], [0, 2, 3]], visual=visual,
                           process=False)
    path = tmp_path / "quad.glb"
    trimesh.Scene(mesh).export(str(path))
    return path


def test_parser_defaults():
    args = build_parser().parse_args(["body.glb"])
    assert args.output == "masks"
    assert args.collider == []
    assert args.texture_size is None
    assert not args.transparent


def test_version(capsys):
    with pytest.raises(SystemExit) as info:
        main(["--version"])
    assert info.value.code == 0
    assert __version__ in capsys.readouterr().out


def test_bake_writes_textures(quad_glb, tmp_path):
    out = tmp_path / "masks"
    log = tmp_path / "bake.log"
    code = main([str(quad_glb), "--output", str(out), "--texture-size", "16",
                 "--log-file", str(log)])
    assert code == 0
    written = list(out.glob("LengthMask_*.png"))
    assert len(written) == 1
    assert "Wrote 1 texture(s)" in log.read_text(encoding="utf-8")


def test_settings_file_is_used(quad_glb, tmp_path):
    settings = tmp_path / "settings.json"
    settings.write_text(json.dumps({"texture_size": 8, "gamma": 1.0}), encoding="utf-8")
    out = tmp_path / "masks"
    assert main([str(quad_glb), "--settings", str(settings), "--output", str(out),
                 "--prefix", "Alpha_", "--transparent"]) == 0
    assert len(list(out.glob("Alpha_*.png"))) == 1


def test_missing_mesh_exit_code(tmp_path):
    assert main([str(tmp_path / "nope.glb")]) == 2


def test_bad_settings_exit_code(quad_glb, tmp_path):
    settings = tmp_path / "settings.json"
    settings.write_text("{broken", encoding="utf-8")
    assert main([str(quad_glb), "--settings", str(settings)]) == 2


def test_unusable_settings_exit_code(quad_glb, tmp_path):
    assert main([str(quad_glb), "--texture-size", "0", "--output", str(tmp_path)]) == 2


def test_unfinished_bake_exit_code(quad_glb, tmp_path, monkeypatch):
    monkeypatch.setattr(
        BakeJob, "run", lambda self: BakeStatus(BakeState.CANCELLED, 0.3, "Cancelled by user"),
    )
    out = tmp_path / "masks"
    assert main([str(quad_glb), "--output", str(out)]) == 1
    assert not out.exists()
