#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Single-image autostereogram generator
=====================================

This script renders a *single-image* autostereogram (the "magic eye" kind): one
continuous, noisy-looking texture that reveals a 3D shape when you look through
the page. No glasses needed.

Outputs (PNG):
  - Autostereogram:        greyscale texture encoding the hidden surface
  - (Optional) recoloured: the same image through a red/cyan palette, without
                           recomputing any geometry
  - (Optional) reference:  greyscale depth image of the hidden surface (white = near)

By default the hidden surface is a **truncated square pyramid** rising out of a
flat plateau. `--shape ring` swaps in a raised square ring instead.

Viewing
-------
Hold the image at the distance given by `--distance-cm` and:
  - positive heights (default): **cross** your eyes until the pattern fuses
  - `--wall-eyed`:              look **through** the page (diverge)

Dependencies
------------
  - Python 3.9+
  - numpy
  - pillow (PIL)

Install:
  pip install numpy pillow

Quick start
-----------
  python autostereo_generator.py --out autostereo_outputs/pyramid.png --seed 42 \
      --width 1200 --height 800 --palette redcyan --reference

Implementation outline
----------------------
1. Build a height field (map) and a continuous texture from a sum of random cosines.
2. Convert physical eye separation / viewing distance (cm) to pixels.
3. Hand both to `StereogramEngine`, which checks the map, walks the chain of surface
   points shared by both eyes for every pixel and folds the summed texture.
4. Save the greyscale image; optionally recolour and write a depth reference.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import Dict, List, Optional

import numpy as np
from PIL import Image

from autostereo_engine import StereogramEngine, two_tone
from autostereo_surface import ConfigurationError, EmissionError, InvalidHeightField

logger = logging.getLogger(__name__)

PALETTES = {
    "redcyan": ((255, 0, 0), (0, 255, 255)),
}


# -----------------------------
# Texture
# -----------------------------

class CosineTexture:
    """
    Smooth random texture: a sum of ``A cos(Bx + Cy + Dz + E)`` terms.

    Parameters
    ----------
    terms : int
        Number of cosines to add.
    scale : float
        Multiplies the result. Larger values cycle through the fold faster and give
        a more sharply contrasting image.
    seed : int, optional
        Draw coefficients right away; otherwise the texture is zero until ``reseed``.
    """

    vectorized = True

    def __init__(self, terms: int = 40, scale: float = 1.0, seed: Optional[int] = None):
        self.terms = terms
        self.scale = scale
        self.coefficients = np.zeros((terms, 5))
        if seed is not None:
            self.reseed(seed)

    def reseed(self, seed: int) -> None:
        # default_rng only takes non-negative seeds
        rng = np.random.default_rng(seed % 2**64)
        n = self.terms
        amplitude = rng.uniform(0.01, 0.05, n)
        fx = rng.uniform(0.01, 0.2, n)
        fy = rng.uniform(0.01, 0.2, n) * rng.choice([-1.0, 1.0], n)
        fz = rng.uniform(0.01, 0.2, n) * rng.choice([-1.0, 1.0], n)
        phase = rng.uniform(0.0, 6.28, n)
        self.coefficients = np.column_stack([amplitude, fx, fy, fz, phase])

    def sample(self, x, y, z):
        x = np.asarray(x, dtype=np.float64)
        y = np.asarray(y, dtype=np.float64)
        z = np.asarray(z, dtype=np.float64)
        res = np.zeros(np.broadcast(x, y, z).shape)
        for a, b, c, d, e in self.coefficients:
            res += a * np.cos(b * x + c * y + d * z + e)
        return self.scale * res


# -----------------------------
# Demo surfaces
# -----------------------------

def make_square_ring_profile(H: int, W: int, outer_frac: float, inner_frac: float,
                             bevel: float = 4.0) -> np.ndarray:
    """
    Rise profile in [0, 1] of a centered square ring with sloped walls.

    Parameters
    ----------
    H, W : int
        Map height and width.
    outer_frac : float
        Outer square side = outer_frac * min(H, W).
    inner_frac : float
        Inner square side = inner_frac * min(H, W). If 0, this becomes a filled square.
    bevel : float
        Horizontal run of each wall, in map units. The profile climbs linearly from 0
        at the ring's edges to 1 once ``bevel`` inside them. 0 gives vertical walls.

    Returns
    -------
    profile : (H, W) float
        1 on top of the ring, 0 on the plateau, linear ramps in between.
    """
    cy, cx = H // 2, W // 2
    half_o = int(min(H, W) * outer_frac) // 2
    half_i = int(min(H, W) * inner_frac) // 2

    Y, X = np.ogrid[:H, :W]
    # Square rings are level sets of the Chebyshev distance from the centre
    d = np.maximum(np.abs(Y - cy), np.abs(X - cx)).astype(np.float64)
    inset = half_o - d
    if half_i > 0:
        inset = np.minimum(inset, d - half_i)

    if bevel <= 0:
        return (inset >= 0).astype(np.float64)
    return np.clip(inset / bevel, 0.0, 1.0)


def make_ring_heightmap(H: int, W: int, base: float = 300.0, rise: float = 100.0,
                        outer_frac: float = 0.60, inner_frac: float = 0.38,
                        bevel: float = 4.0) -> np.ndarray:
    """Flat plateau at ``base`` with a square ring standing ``rise`` above it."""
    return base + rise * make_square_ring_profile(H, W, outer_frac, inner_frac, bevel)


def make_pyramid_heightmap(H: int, W: int, base: float = 300.0, rise: float = 100.0) -> np.ndarray:
    """
    Flat plateau at ``base`` with a square pyramid rising ``rise`` above it.

    The pyramid covers the middle half of the width and the middle two thirds of the
    height; its four faces meet along the diagonals of that rectangle.
    """
    Y, X = np.mgrid[:H, :W].astype(np.float64)

    flat = (4.0 * X < W) | (4.0 * X > 3.0 * W) | (6.0 * Y < H) | (6.0 * Y > 5.0 * H)

    # Which side of each diagonal of the pyramid footprint a point is on
    below_main = 4.0 * H * (X - W / 4.0) < 3.0 * W * (Y - H / 6.0)
    below_anti = 4.0 * H * (X - 0.75 * W) < -3.0 * W * (Y - H / 6.0)

    left_face = base + (X - W / 4.0) * rise / (W / 4.0)
    bottom_face = base + (5.0 * H / 6.0 - Y) * rise / (H / 3.0)
    top_face = base + (Y - H / 6.0) * rise / (H / 3.0)
    right_face = base + (0.75 * W - X) * rise / (W / 4.0)

    faces = np.select([below_main & below_anti, below_main, below_anti],
                      [left_face, bottom_face, top_face], default=right_face)
    return np.where(flat, base, faces)


def write_depth_reference(heights: np.ndarray, path: str) -> None:
    """Greyscale picture of the hidden surface, nearest point white, farthest black."""
    h = np.asarray(heights, dtype=np.float64)
    lo, hi = h.min(), h.max()
    if hi > lo:
        level = (h - lo) / (hi - lo)
    else:
        level = np.ones_like(h)
    Image.fromarray((level * 255).astype(np.uint8)).save(path)


# -----------------------------
# Generation
# -----------------------------

def generate_one(out_path: str, width: int, height: int, map_width: int, map_height: int,
                 eye_px: int, observer_px: int, shape: str, base: float, rise: float,
                 wall_eyed: bool, palette: Optional[str], reference: bool, seed: int,
                 workers: int = 1, scale: float = 1.0) -> Dict[str, str]:
    """
    Build one autostereogram (plus optional recoloured copy and depth reference).

    Returns a dict of file paths.
    """
    if shape == "ring":
        heights = make_ring_heightmap(map_height, map_width, base, rise)
    else:
        heights = make_pyramid_heightmap(map_height, map_width, base, rise)
    if wall_eyed:
        heights = -heights

    engine = StereogramEngine(width, height, eye_px, observer_px,
                              CosineTexture(scale=scale), workers=workers)
    engine.build(heights, seed, out_path)

    stem, _ = os.path.splitext(out_path)
    paths = {"greyscale": out_path}
    if palette:
        dark, light = PALETTES[palette]
        paths[palette] = f"{stem}_{palette}.png"
        engine.apply_color_scheme(two_tone(dark, light), paths[palette])
    if reference:
        paths["reference"] = f"{stem}_depth.png"
        write_depth_reference(heights, paths["reference"])
    return paths


# -----------------------------
# Main / CLI
# -----------------------------

def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        description="Single-image autostereogram generator. "
                    "Cross your eyes (or diverge with --wall-eyed) to see the hidden shape.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    p.add_argument("--out", type=str, default="autostereo_outputs/autostereogram.png", help="Output PNG path")
    p.add_argument("--seed", type=int, default=42, help="Texture seed")
    p.add_argument("--width", type=int, default=1200, help="Image width (pixels)")
    p.add_argument("--height", type=int, default=800, help="Image height (pixels)")
    p.add_argument("--map-width", type=int, default=None, help="Height field width (default: image width)")
    p.add_argument("--map-height", type=int, default=None, help="Height field height (default: image height)")
    p.add_argument("--pixel-size", type=float, default=0.0162, help="Size of one pixel on screen/paper (cm)")
    p.add_argument("--eye-cm", type=float, default=6.5, help="Distance between the viewer's eyes (cm)")
    p.add_argument("--distance-cm", type=float, default=30.0, help="Viewing distance (cm)")
    p.add_argument("--shape", type=str, choices=["pyramid", "ring"], default="pyramid", help="Hidden surface")
    p.add_argument("--base", type=float, default=300.0, help="Plateau height (pixels)")
    p.add_argument("--rise", type=float, default=100.0, help="Height of the shape above the plateau (pixels)")
    p.add_argument("--scale", type=float, default=1.0, help="Texture contrast multiplier")
    p.add_argument("--wall-eyed", action="store_true",
                   help="Negate the surface so it is seen by diverging instead of crossing the eyes. "
                        "Needs a map larger than the image.")
    p.add_argument("--palette", type=str, choices=sorted(PALETTES), default=None,
                   help="Also write a recoloured copy of the image")
    p.add_argument("--reference", action="store_true", help="Also write a greyscale depth reference image")
    p.add_argument("--workers", type=int, default=1, help="Threads used for synthesis")
    p.add_argument("--verbose", action="store_true", help="Log progress")
    return p.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING,
                        format="%(asctime)s %(levelname)s %(message)s")

    if args.pixel_size <= 0:
        raise SystemExit(f"--pixel-size must be positive. Got {args.pixel_size}.")
    eye_px = int(args.eye_cm / args.pixel_size)
    observer_px = int(args.distance_cm / args.pixel_size)
    map_width = args.map_width or args.width
    map_height = args.map_height or args.height
    logger.info("eyes %d px apart, %d px from the image", eye_px, observer_px)

    try:
        paths = generate_one(
            out_path=args.out,
            width=args.width,
            height=args.height,
            map_width=map_width,
            map_height=map_height,
            eye_px=eye_px,
            observer_px=observer_px,
            shape=args.shape,
            base=args.base,
            rise=args.rise,
            wall_eyed=args.wall_eyed,
            palette=args.palette,
            reference=args.reference,
            seed=args.seed,
            workers=args.workers,
            scale=args.scale,
        )
    except InvalidHeightField as exc:
        print(exc, file=sys.stderr)
        raise SystemExit(1)
    except (ConfigurationError, EmissionError) as exc:
        raise SystemExit(str(exc))

    # Print a compact summary for the console
    print("Saved files:")
    for v in paths.values():
        print(f"  {os.path.basename(v)}")
    print(f"\nOutput folder: {os.path.abspath(os.path.dirname(args.out) or '.')}")
    print("Viewing: cross your eyes" if not args.wall_eyed else "Viewing: look through the page")


if __name__ == "__main__":
    main()
