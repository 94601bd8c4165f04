#!/usr/bin/env python3
"""CLI wrapper for the product scene workspace.

Usage:
    python scene_cli.py --product mug.png --scene-prompt "sunlit kitchen counter"
    python scene_cli.py --product mug.png --angle mug_side.png --scene kitchen.jpg --animate "slow pan"
"""

from __future__ import annotations

import argparse
import asyncio
import mimetypes
import os
import sys
import time
from pathlib import Path
from typing import List, Optional, Union

from dotenv import load_dotenv

load_dotenv()

import log_setup
# progress goes to stdout; keep the console to warnings
log_setup.configure(os.environ.get("LOG_LEVEL", "WARNING"), filename="cli.log")

import scene_core
from errors import ConfigurationError, SceneError
from media_codec import MediaPayload, payload_from_upload
from workspace import DEFAULT_REFINEMENT, StoredImage, StoredVideo, Workspace


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Place a product photo into a lifestyle scene (and optionally animate it)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scene_cli.py --product mug.png --scene-prompt "sunlit kitchen counter"
  python scene_cli.py --product mug.png --angle side.png --angle top.png --scene kitchen.jpg
  python scene_cli.py --product mug.png --scene kitchen.jpg --animate "slow dolly-in, steam rising"
""",
    )
    parser.add_argument("--product", default=None, help="Primary product image")
    parser.add_argument("--angle", action="append", default=[], help="Additional product angle (repeatable)")
    scene = parser.add_mutually_exclusive_group()
    scene.add_argument("--scene", default=None, help="Lifestyle scene image to use as background")
    scene.add_argument("--scene-prompt", default=None, help="Generate the lifestyle scene from this prompt")
    parser.add_argument(
        "--prompt",
        default=DEFAULT_REFINEMENT,
        help="Refinement instructions for the combination step",
    )
    parser.add_argument(
        "--model",
        choices=[m.value for m in scene_core.CompositeModel],
        default=scene_core.DEFAULT_COMPOSITE_MODEL.value,
        help=f"Compositing model (default: {scene_core.DEFAULT_COMPOSITE_MODEL.value})",
    )
    parser.add_argument("--animate", default=None, metavar="MOTION", help="Animate the result with this motion prompt")
    parser.add_argument(
        "--output-dir",
        default="cli_output",
        help="Directory to save results (default: cli_output)",
    )
    parser.add_argument("--list-models", action="store_true", help="List available models and exit")

    args = parser.parse_args(argv)

    if args.list_models:
        _list_models()
        return 0

    if not args.product:
        parser.error("--product is required")
    if not args.scene and not args.scene_prompt:
        parser.error("one of --scene or --scene-prompt is required")

    try:
        client = scene_core.SceneClient.from_env()
    except ConfigurationError as exc:
        print(f"✗  {exc}", file=sys.stderr)
        return 2

    try:
        product = _read_image(args.product)
        angles = [_read_image(p) for p in args.angle]
        background = _read_image(args.scene) if args.scene else None
    except (OSError, SceneError) as exc:
        print(f"✗  {exc}", file=sys.stderr)
        return 2

    output_dir = Path(args.output_dir) / f"scene_{int(time.time())}"
    output_dir.mkdir(parents=True, exist_ok=True)

    _echo(f"\n  ✦ Product Scene Studio CLI")
    _echo(f"  Product : {args.product} (+{len(angles)} angles)")
    _echo(f"  Scene   : {args.scene or repr(args.scene_prompt)}")
    _echo(f"  Model   : {args.model}")
    _echo(f"  Output  : {output_dir}\n")

    workspace = Workspace(client)
    try:
        return asyncio.run(_run(workspace, args, product, angles, background, output_dir))
    finally:
        workspace.close()


async def _run(
    workspace: Workspace,
    args: argparse.Namespace,
    product: MediaPayload,
    angles: List[MediaPayload],
    background: Optional[MediaPayload],
    output_dir: Path,
) -> int:
    workspace.create_product(product)
    for angle in angles:
        workspace.add_angle(angle)
    _echo("  ✓ Product loaded")

    try:
        if background is not None:
            workspace.upload_lifestyle(background)
            _echo("  ✓ Scene loaded")
        else:
            _echo("  ◌ Generating lifestyle scene…")
            scene = await workspace.generate_lifestyle(args.scene_prompt)
            _save(workspace, scene, output_dir / "scene")
            _echo("  ✓ Scene generated")

        _echo("  ◌ Combining product and scene…")
        result = await workspace.combine(args.prompt, args.model)
        result_path = _save(workspace, result, output_dir / "result")
        _echo(f"  ✓ Result saved: {result_path}")

        if args.animate:
            video = await workspace.animate(args.animate, lambda msg: _echo(f"    {msg}"))
            video_path = _save(workspace, video, output_dir / "video")
            _echo(f"  ✓ Video saved: {video_path}")
    except SceneError as exc:
        print(f"\n✗  {exc}", file=sys.stderr)
        return 1

    _echo("")
    return 0


def _read_image(path: str) -> MediaPayload:
    mime_type, _ = mimetypes.guess_type(path)
    return payload_from_upload(Path(path).read_bytes(), mime_type)


def _save(workspace: Workspace, item: Union[StoredImage, StoredVideo], stem: Path) -> Path:
    data, _, filename = workspace.export(item.handle)
    path = stem.with_suffix(Path(filename).suffix or ".bin")
    path.write_bytes(data)
    return path


def _list_models() -> None:
    print("\nCompositing Models")
    print("─" * 40)
    for m in scene_core.COMPOSITE_MODELS:
        print(f"  {m['id']}")
        print(f"    {m['description']}")

    print("\nScene Model")
    print("─" * 40)
    print(f"  {scene_core.SCENE_MODEL}")

    print("\nVideo Model")
    print("─" * 40)
    print(f"  {scene_core.VIDEO_MODEL}")
    print()


def _echo(msg: str) -> None:
    print(msg, flush=True)


if __name__ == "__main__":
    raise SystemExit(main())
