"""
Command-line entry point for Fur Mask Baker.

Invoked via:
    python -m fur_mask_baker MESH [options]
    fur-mask-baker MESH [options]

Loads the mesh (and optional exclusion colliders), runs one bake to
completion with the given settings and writes one PNG per material.

Exit codes:
    0  bake finished and textures were written
    1  bake was cancelled or failed
    2  the mesh, settings or arguments were invalid
"""

import argparse
import logging
import sys

from fur_mask_baker import __version__
from fur_mask_baker.core.collider import Open3DCollider
from fur_mask_baker.core.engine import MaskBakeEngine
from fur_mask_baker.core.exporter import DEFAULT_PREFIX, save_textures
from fur_mask_baker.core.mesh_data import MeshValidationError
from fur_mask_baker.core.mesh_loader import load_collider_meshes, load_mesh_snapshot
from fur_mask_baker.core.settings import BakeSettings, SettingsError, load_settings
from fur_mask_baker.logging_config import setup_logging

logger = logging.getLogger("fur_mask_baker.cli")


def build_parser():
    parser = argparse.ArgumentParser(
        prog="fur-mask-baker",
        description="Bake fur length masks for a UV-mapped character mesh.",
    )
    parser.add_argument("mesh", help="Mesh file to bake (GLB, glTF, OBJ, PLY, ...)")
    parser.add_argument("--settings", help="Bake settings JSON file")
    parser.add_argument("--collider", action="append", default=[],
                        help="Exclusion geometry mesh; may be given several times")
    parser.add_argument("--output", default="masks", help="Output directory (default: masks)")
    parser.add_argument("--prefix", default=DEFAULT_PREFIX, help="Texture file name prefix")
    parser.add_argument("--texture-size", type=int, help="Override the texture resolution")
    parser.add_argument("--transparent", action="store_true",
                        help="Write masks with the transparent encoding")
    parser.add_argument("--log-file", help="Also write the log to this file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def _print_progress(title, message, fraction):
    logger.info("%s: %s (%.0f%%)", title, message, fraction * 100)
    return False


def main(argv=None):
    args = build_parser().parse_args(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.INFO, args.log_file)

    try:
        settings = load_settings(args.settings) if args.settings else BakeSettings()
        if args.texture_size is not None:
            settings.texture_size = args.texture_size
        if args.transparent:
            settings.transparent_mode = True

        snapshot = load_mesh_snapshot(args.mesh)
        collider = None
        if args.collider:
            collider = Open3DCollider(load_collider_meshes(args.collider))

        engine = MaskBakeEngine()
        job = engine.create_job(snapshot, settings, collider=collider,
                                progress_sink=_print_progress)
        job.start()
    except (MeshValidationError, SettingsError, FileNotFoundError) as e:
        logger.error("%s", e)
        return 2

    status = job.run()
    if not status.finished:
        logger.error("Bake did not finish: %s", status.message)
        return 1

    written = save_textures(job.result.buffers, args.output, prefix=args.prefix)
    logger.info("Wrote %d texture(s) to %s", len(written), args.output)
    return 0


if __name__ == "__main__":
    sys.exit(main())
