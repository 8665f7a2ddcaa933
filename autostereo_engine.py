#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Single-image autostereogram synthesis
=====================================

``StereogramEngine`` turns a height field into a PNG autostereogram:

  1. validate the height field (sign, maximum height, border reachability)
  2. reseed the texture source
  3. for every window pixel, walk the chain of surface points that the two eyes
     link together and sum the texture value at each of them
  4. fold the sums into [0, 1] so the image repeats with the depth of the surface
  5. map each scalar to a packed ARGB colour and hand the grid to the image sink

Collaborators
-------------
texture
    Any object with ``reseed(seed: int)`` and ``sample(x, y, z) -> float``. A texture
    whose ``sample`` broadcasts over numpy arrays can set ``vectorized = True`` to be
    called once per batch instead of once per point. ``sample`` must vary
    continuously, or the image shows bands. How quickly it varies sets how fast
    the pattern cycles.
color scheme
    A callable ``float -> int`` returning ``0xAARRGGBB``. Defaults to ``greyscale``.
sink
    A callable ``(colors, destination)`` persisting a ``(winy, winx)`` uint32 grid.
    Defaults to ``save_png``. It should raise OSError on failure.
"""

from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional, Tuple

import numpy as np
from PIL import Image

from autostereo_surface import (
    TOLERANCE,
    ConfigurationError,
    Direction,
    EmissionError,
    HeightField,
    InvalidHeightField,
    HeightFieldProblem,
    RayIntersector,
    check_heights,
    verify_border,
)

logger = logging.getLogger(__name__)

# Width (map units) of the fade applied at the left and right edges of the map.
BORDER_WIDTH = 30

OPAQUE = 0xFF000000


# -----------------------------
# Chain synthesis
# -----------------------------

def fold(total):
    """
    Fold accumulated sums into [0, 1]: a true modulo 2, then reflect [1, 2) back down.

    Works on scalars and arrays; negative sums fold the same way as positive ones.
    """
    v = np.mod(total, 2.0)
    out = np.where(v >= 1.0, 2.0 - v, v)
    return float(out) if out.ndim == 0 else out


def border_fade(values, x, map_width: float, border_width: float = BORDER_WIDTH):
    """Scale ``values`` linearly to zero within ``border_width`` of the map's left and right edges."""
    if border_width <= 0:
        return values
    weight = np.where(x < border_width, x / border_width, 1.0)
    weight = np.where(x > map_width - border_width, weight * (map_width - x) / border_width, weight)
    return values * weight


def texture_sampler(texture):
    """
    Array-in, array-out view of ``texture.sample``.

    Textures that set ``vectorized = True`` are called with whole numpy arrays;
    any other ``sample(x, y, z) -> float`` is applied point by point.
    """
    if getattr(texture, "vectorized", False):
        return texture.sample
    return np.vectorize(texture.sample, otypes=[np.float64])


def synthesize_field(intersector: RayIntersector, texture, winx: int, rows,
                     offset: Tuple[int, int], border_width: float = BORDER_WIDTH) -> np.ndarray:
    """
    Folded scalar for every window pixel in ``rows`` (all ``winx`` columns).

    For each eye, the sightline through the pixel meets the surface; the texture is
    sampled there, and the point is projected through the *other* eye back onto the
    window plane. The search repeats from that new window point until a sightline
    misses the surface. Both chains add into one sum per pixel, which is folded.

    Returns
    -------
    (len(rows), winx) float64
    """
    rows = np.asarray(rows)
    offx, offy = offset
    py, px = np.meshgrid(rows, np.arange(winx), indexing="ij")
    start_x = (px + offx).astype(np.float64).ravel()
    start_y = (py + offy).astype(np.float64).ravel()

    field = intersector.field
    observer = intersector.observer_distance
    sample = texture_sampler(texture)
    total = np.zeros(start_x.size)

    for direction in Direction:
        relay = intersector.eye_x(direction.opposite)
        idx = np.arange(start_x.size)
        x = start_x
        while idx.size:
            ix, iy, iz, hit = intersector.find_intersections(x, start_y[idx], direction)
            idx = idx[hit]
            ix, iy, iz = ix[hit], iy[hit], iz[hit]
            values = np.broadcast_to(np.asarray(sample(ix, iy, iz), dtype=np.float64), ix.shape)
            total[idx] += border_fade(values, ix, field.width, border_width)
            factor = observer / (observer - iz)
            x = relay + (ix - relay) * factor

    return fold(total).reshape(py.shape)


# -----------------------------
# Colour mapping
# -----------------------------

def greyscale(v: float) -> int:
    """Default colour scheme: ``v * 256`` clamped to 0..255 on all three channels, opaque."""
    c = min(255, max(0, int(v * 256)))
    return OPAQUE | (c << 16) | (c << 8) | c


def two_tone(dark_rgb: Tuple[int, int, int], light_rgb: Tuple[int, int, int]) -> Callable[[float], int]:
    """
    Colour scheme blending linearly from ``dark_rgb`` at 0 to ``light_rgb`` at 1.

    e.g. ``two_tone((255, 0, 0), (0, 255, 255))`` for a red/cyan page.
    """
    def scheme(v: float) -> int:
        t = min(1.0, max(0.0, float(v)))
        r, g, b = (int(round(d + (l - d) * t)) for d, l in zip(dark_rgb, light_rgb))
        return OPAQUE | (r << 16) | (g << 8) | b
    return scheme


def apply_colors(field: np.ndarray, scheme: Callable[[float], int]) -> np.ndarray:
    """Map every scalar of ``field`` through ``scheme``; returns a uint32 ARGB grid of the same shape."""
    return np.vectorize(scheme, otypes=[np.uint32])(field)


# -----------------------------
# Image sink
# -----------------------------

def save_png(colors: np.ndarray, destination) -> None:
    """
    Write a ``(H, W)`` grid of packed ARGB colours as an RGBA PNG.

    Existing files are overwritten; missing parent folders are created.
    """
    argb = np.asarray(colors, dtype=np.uint32)
    rgba = np.stack([(argb >> 16) & 0xFF,
                     (argb >> 8) & 0xFF,
                     argb & 0xFF,
                     (argb >> 24) & 0xFF], axis=-1).astype(np.uint8)
    path = os.fspath(destination)
    folder = os.path.dirname(path)
    if folder:
        os.makedirs(folder, exist_ok=True)
    Image.fromarray(rgba).save(path, format="PNG")


# -----------------------------
# Engine
# -----------------------------

class StereogramEngine:
    """
    Builds autostereograms for a fixed window and viewing geometry.

    Parameters
    ----------
    winx, winy : int
        Size of the produced image in pixels.
    eye_distance : float
        Distance between the viewer's eyes, in pixels.
    observer_distance : float
        Distance from the viewer's eyes to the image, in pixels.
    texture
        Continuous texture source (``reseed`` / ``sample``).
    color_scheme : callable, optional
        ``float -> 0xAARRGGBB``; ``greyscale`` when None.
    sink : callable
        ``(colors, destination)`` image writer.
    workers : int
        Number of threads synthesising disjoint bands of rows.
    border_width, tolerance : float
        Edge fade width and bisection tolerance, in map units.
    """

    def __init__(self, winx: int, winy: int, eye_distance: float, observer_distance: float,
                 texture, color_scheme: Optional[Callable[[float], int]] = None,
                 sink: Callable = save_png, workers: int = 1,
                 border_width: float = BORDER_WIDTH, tolerance: float = TOLERANCE):
        if winx <= 0 or winy <= 0 or eye_distance <= 0 or observer_distance <= 0:
            raise ConfigurationError("window size, eye distance and observer distance must all be positive")
        if workers < 1:
            raise ConfigurationError(f"workers must be at least 1, got {workers}")
        if tolerance <= 0:
            raise ConfigurationError(f"tolerance must be positive, got {tolerance}")
        self.winx = int(winx)
        self.winy = int(winy)
        self.eye_distance = eye_distance
        self.observer_distance = observer_distance
        self.texture = texture
        self.color_scheme = color_scheme if color_scheme is not None else greyscale
        self.sink = sink
        self.workers = workers
        self.border_width = border_width
        self.tolerance = tolerance
        self.field = np.zeros((self.winy, self.winx))

    def _bind(self, heights) -> RayIntersector:
        surface = HeightField(heights)
        logger.debug("map %dx%d under window %dx%d, offset %s",
                     surface.width, surface.height, self.winx, self.winy,
                     surface.offsets(self.winx, self.winy))
        return RayIntersector(surface, self.eye_distance, self.observer_distance, self.tolerance)

    def verify_border(self, heights) -> Optional[Tuple[int, int]]:
        """
        Window border pixel that cannot see the surface from either eye, or None.

        Pre-flight check only: the stored scalar field is left untouched.
        """
        return verify_border(self._bind(heights), self.winx, self.winy)

    def build(self, heights, seed: int, destination) -> None:
        """
        Validate ``heights``, synthesise the image and write it to ``destination``.

        Raises
        ------
        ConfigurationError
            ``destination`` is None or ``heights`` is not a 2-D grid.
        InvalidHeightField
            The height field fails a check; nothing has been synthesised.
        EmissionError
            The image sink failed.
        """
        if destination is None:
            raise ConfigurationError("no destination given")
        intersector = self._bind(heights)
        check_heights(intersector.field, self.observer_distance)
        blind = verify_border(intersector, self.winx, self.winy)
        if blind is not None:
            raise InvalidHeightField(HeightFieldProblem.TOO_SMALL, *blind)

        logger.info("building %dx%d autostereogram (seed %d, %d worker%s)",
                    self.winx, self.winy, seed, self.workers, "" if self.workers == 1 else "s")
        self.texture.reseed(seed)
        self.field = self._synthesize(intersector)
        self.apply_color_scheme(self.color_scheme, destination)

    def _synthesize(self, intersector: RayIntersector) -> np.ndarray:
        offset = intersector.field.offsets(self.winx, self.winy)
        out = np.empty((self.winy, self.winx))
        bands = [b for b in np.array_split(np.arange(self.winy), self.workers) if b.size]

        def run(rows):
            out[rows[0]:rows[-1] + 1] = synthesize_field(intersector, self.texture, self.winx,
                                                         rows, offset, self.border_width)

        if len(bands) == 1:
            run(bands[0])
        else:
            with ThreadPoolExecutor(max_workers=len(bands)) as pool:
                # list() surfaces any exception raised in a band
                list(pool.map(run, bands))
        return out

    def apply_color_scheme(self, color_scheme: Optional[Callable[[float], int]], destination) -> None:
        """Recolour the most recently built scalar field and write it; geometry is not recomputed."""
        if destination is None:
            raise ConfigurationError("no destination given")
        scheme = color_scheme if color_scheme is not None else greyscale
        colors = apply_colors(self.field, scheme)
        try:
            self.sink(colors, destination)
        except OSError as exc:
            raise EmissionError(f"could not write image to {destination}: {exc}") from exc
        logger.info("wrote %s", destination)
