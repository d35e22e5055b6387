"""TY asset extractor command line.

    ty-extract list ARCHIVE [--ext mdl]
    ty-extract info ARCHIVE MODEL
    ty-extract dump ARCHIVE MODEL [-o out.json]
    ty-extract batch ARCHIVE [--workers N] [--dump --output-dir DIR]

ARCHIVE defaults to TY_ARCHIVE_PATH for list and batch. --uv-shift (before the
command) defaults to TY_UV_SHIFT.
"""

import argparse
import json
import logging
import os
import sys
from concurrent.futures import ThreadPoolExecutor, as_completed

from . import config
from .archive import open_archive
from .diagnostics import Diagnostics
from .errors import TYFormatError
from .logging_config import setup_logging
from .model import load_model

logger = logging.getLogger(__name__)


def cmd_list(args):
    archive = open_archive(args.archive)
    archive.dump_info()
    names = archive.list_by_extension(args.ext) if args.ext else archive.list_files()
    for name in sorted(names, key=str.lower):
        record = archive.get_file(name)
        print(f"{record.size:>10}  {name}")
    print(f"{len(names)} file(s) in {archive.version} archive")
    return 0


def cmd_info(args):
    archive = open_archive(args.archive)
    model = load_model(archive, args.model, config.default_config(args.uv_shift))
    header = model.header

    print("=" * 60)
    print(f"Model: {model.name}")
    print("=" * 60)
    print(f"Header strategy:  {header.strategy}")
    print(f"Geometry format:  {model.geometry_format}")
    print(f"Meshes:           {len(model.meshes)}")
    print(f"Vertices:         {model.vertex_count}")
    print(f"Triangles:        {model.triangle_count}")
    print(f"Colliders:        {len(model.colliders)}")
    print(f"Bones:            {len(model.bones)}")
    for i, mesh in enumerate(model.meshes):
        print(f"  [{i:3d}] {len(mesh.vertices):6d} verts {mesh.triangle_count:6d} tris  {mesh.texture_file}")
    return 0


def cmd_dump(args):
    archive = open_archive(args.archive)
    model = load_model(archive, args.model, config.default_config(args.uv_shift))
    text = json.dumps(model.summary(), indent=2)
    if args.output:
        with open(args.output, "w", encoding="utf-8") as f:
            f.write(text)
        logger.info(f"Wrote {args.output}")
    else:
        print(text)
    return 0


def _load_one(archive, name, decoder_config):
    diagnostics = Diagnostics()
    model = load_model(archive, name, decoder_config, diagnostics)
    return model, len(diagnostics.warnings)


def _write_summary(model, name, output_dir):
    os.makedirs(output_dir, exist_ok=True)
    path = os.path.join(output_dir, os.path.splitext(os.path.basename(name))[0] + ".json")
    with open(path, "w", encoding="utf-8") as f:
        json.dump(model.summary(), f, indent=2)


def cmd_batch(args):
    """Decode every model in the archive and report per-model results."""
    archive = open_archive(args.archive)
    decoder_config = config.default_config(args.uv_shift)
    names = sorted(archive.list_by_extension("mdl"), key=str.lower)

    ok = 0
    failed = 0
    with ThreadPoolExecutor(max_workers=args.workers) as pool:
        futures = {pool.submit(_load_one, archive, name, decoder_config): name for name in names}
        for future in as_completed(futures):
            name = futures[future]
            try:
                model, warnings = future.result()
            except TYFormatError as e:
                failed += 1
                print(f"  FAIL {name}: {type(e).__name__}: {e}")
                continue
            ok += 1
            if args.dump:
                _write_summary(model, name, args.output_dir)
            print(f"  OK   {name}: {len(model.meshes)} meshes, {model.triangle_count} tris, "
                  f"{warnings} warning(s)")

    print()
    print(f"Decoded {ok}/{len(names)} models ({failed} failed)")
    return 0 if failed == 0 else 1


def build_parser():
    parser = argparse.ArgumentParser(prog="ty-extract", description="TY model and archive extractor")
    parser.add_argument("--log-level", default=config.LOG_LEVEL, help="Logging level (default: %(default)s)")
    parser.add_argument("--log-file", help="Also write logs to this file")
    parser.add_argument("--uv-shift", default=config.UV_SHIFT,
                        help=f"PC UV shift heuristic, one of {', '.join(config.UV_SHIFT_MODES)} "
                             "(default: TY_UV_SHIFT or auto)")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("list", help="List archive contents")
    p.add_argument("archive", nargs="?", default=config.ARCHIVE_PATH)
    p.add_argument("--ext", help="Only files with this extension (e.g. mdl)")
    p.set_defaults(func=cmd_list)

    p = sub.add_parser("info", help="Print a model summary")
    p.add_argument("archive")
    p.add_argument("model")
    p.set_defaults(func=cmd_info)

    p = sub.add_parser("dump", help="Write a model summary as JSON")
    p.add_argument("archive")
    p.add_argument("model")
    p.add_argument("-o", "--output", help="Output file (default: stdout)")
    p.set_defaults(func=cmd_dump)

    p = sub.add_parser("batch", help="Decode every model in an archive")
    p.add_argument("archive", nargs="?", default=config.ARCHIVE_PATH)
    p.add_argument("--workers", type=int, default=4)
    p.add_argument("--dump", action="store_true", help="Write a JSON summary per model")
    p.add_argument("--output-dir", default=config.OUTPUT_DIR, help="Where --dump writes (default: %(default)s)")
    p.set_defaults(func=cmd_batch)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.uv_shift not in config.UV_SHIFT_MODES:
        parser.error(f"invalid UV shift mode {args.uv_shift!r} (from --uv-shift or TY_UV_SHIFT); "
                     f"choose from {', '.join(config.UV_SHIFT_MODES)}")
    setup_logging(args.log_level, args.log_file)

    try:
        return args.func(args)
    except TYFormatError as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
