#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Height-field surface geometry for single-image autostereograms
==============================================================

This module holds everything that needs to know where the hidden 3D surface sits
in space and where a sightline from either eye meets it:

  - ``HeightField``     : a dense grid of heights, sampled bilinearly
  - ``RayIntersector``  : bracket-and-bisect search for sightline/surface crossings
  - ``check_heights``   : sign and maximum-height admissibility of a field
  - ``verify_border``   : every edge pixel of the window must reach the surface
  - the error taxonomy shared with ``autostereo_engine``

Coordinate system
-----------------
The window (the eventual image) lies on the plane z = 0. The eyes sit at
z = observer_distance, at half the map height, separated horizontally by
eye_distance and centred on the map. Heights are z values of the surface:
positive heights sit between the window and the eyes (cross-eyed viewing),
negative heights sit behind the window (wall-eyed viewing).

Height arrays use the image convention ``heights[y, x]`` (shape ``(H, W)``);
all coordinates reported to callers are ``(x, y)``.

Known limitation
----------------
A sightline that crosses the surface more than once (the surface occluding
itself from one eye) is not detected. The search returns *a* crossing and the
resulting image shows visible defects where this happens.
"""

from __future__ import annotations

import logging
import math
from enum import Enum
from typing import NamedTuple, Optional, Tuple

import numpy as np

logger = logging.getLogger(__name__)

# Bisection stops once the z-gap of the bracket is below this.
TOLERANCE = 0.001

# The doubling walk leaves any realistic footprint long before this.
MAX_BRACKET_STEPS = 64


# -----------------------------
# Errors
# -----------------------------

class ConfigurationError(ValueError):
    """Non-positive geometry, a missing destination, or a height field that is not a 2-D grid."""


class HeightFieldProblem(str, Enum):
    NOT_SIGN_CONSISTENT = "NOTNONZERO"
    TOO_HIGH = "TOOHIGH"
    TOO_SMALL = "TOOSMALL"


class InvalidHeightField(Exception):
    """
    The height field cannot produce a correct autostereogram.

    Attributes
    ----------
    kind : HeightFieldProblem
    x, y : int
        Offending coordinate. For NOT_SIGN_CONSISTENT and TOO_HIGH this is a cell
        of the height field; for TOO_SMALL it is a pixel on the window border.
    """

    def __init__(self, kind: HeightFieldProblem, x: int, y: int):
        self.kind = kind
        self.x = int(x)
        self.y = int(y)
        super().__init__(self._describe())

    @property
    def coordinate(self) -> Tuple[int, int]:
        return self.x, self.y

    def _describe(self) -> str:
        if self.kind is HeightFieldProblem.TOO_SMALL:
            return (f"Height field is too small compared to window; "
                    f"point ({self.x}, {self.y}) cannot reach it.")
        if self.kind is HeightFieldProblem.NOT_SIGN_CONSISTENT:
            return (f"All points in the height field must have the same sign: points (0, 0) "
                    f"and ({self.x}, {self.y}) have different sign or one is zero.")
        return (f"All points in the height field must be lower than the observer distance: "
                f"point ({self.x}, {self.y}) is not.")


class EmissionError(OSError):
    """Writing the finished image failed. The underlying OSError is chained as __cause__."""


# -----------------------------
# Height field
# -----------------------------

class HeightField:
    """
    Dense grid of heights viewed as a continuous, piecewise-bilinear surface.

    Parameters
    ----------
    heights : array_like, shape (H, W)
        ``heights[y, x]`` is the surface height above grid point (x, y).
    """

    def __init__(self, heights):
        arr = np.asarray(heights, dtype=np.float64)
        if arr.ndim != 2 or arr.size == 0:
            raise ConfigurationError(f"height field must be a non-empty 2-D array, got shape {arr.shape}")
        self.heights = arr
        self.height, self.width = arr.shape

    def contains(self, x, y):
        """True where (x, y) lies in the half-open footprint [0, W) x [0, H)."""
        return (x >= 0.0) & (x < self.width) & (y >= 0.0) & (y < self.height)

    def interior(self, x, y):
        """True where (x, y) lies strictly inside the footprint; edge points count as outside."""
        return (x > 0.0) & (x < self.width) & (y > 0.0) & (y < self.height)

    def offsets(self, winx: int, winy: int) -> Tuple[int, int]:
        """
        Translation from window to map coordinates, centring the map under the window.

        Halves truncate toward zero, so a map narrower than the window by an odd
        amount is shifted the same way on both sides of the origin.
        """
        return int((self.width - winx) / 2), int((self.height - winy) / 2)

    def sample(self, x, y):
        """
        Bilinear height at real coordinates (x, y); scalars or arrays.

        No bounds checking: callers guarantee 0 <= x < W and 0 <= y < H. On the last
        column (row) the +1 neighbour is clamped onto the point itself, which reduces
        the blend to a 1-D interpolation along the other axis, and to the stored value
        at the last corner.
        """
        x = np.asarray(x, dtype=np.float64)
        y = np.asarray(y, dtype=np.float64)
        xi = np.floor(x).astype(np.intp)
        yi = np.floor(y).astype(np.intp)
        xj = np.minimum(xi + 1, self.width - 1)
        yj = np.minimum(yi + 1, self.height - 1)
        fx = x - xi
        fy = y - yi

        h = self.heights
        near = (1.0 - fx) * h[yi, xi] + fx * h[yi, xj]
        far = (1.0 - fx) * h[yj, xi] + fx * h[yj, xj]
        out = (1.0 - fy) * near + fy * far
        return float(out) if out.ndim == 0 else out


# -----------------------------
# Sightline / surface crossing
# -----------------------------

class Direction(Enum):
    LEFT = "left"
    RIGHT = "right"

    @property
    def opposite(self) -> "Direction":
        return Direction.RIGHT if self is Direction.LEFT else Direction.LEFT


class Intersection(NamedTuple):
    x: float
    y: float
    z: float


def _bisection_limit(gap: float, tolerance: float) -> int:
    # Each halving shrinks every bracket; a couple of spare rounds absorb rounding.
    if gap <= tolerance:
        return 1
    return int(math.ceil(math.log2(gap / tolerance))) + 2


class RayIntersector:
    """
    Finds where sightlines through window points meet a height field.

    Parameters
    ----------
    field : HeightField
    eye_distance : float
        Horizontal separation of the eyes, in map units (pixels).
    observer_distance : float
        Height of the eyes above the window plane, in map units (pixels).
    tolerance : float
        Bisection stops once the z-gap of the bracket is below this.
    """

    def __init__(self, field: HeightField, eye_distance: float, observer_distance: float,
                 tolerance: float = TOLERANCE):
        if tolerance <= 0:
            raise ConfigurationError(f"tolerance must be positive, got {tolerance}")
        self.field = field
        self.eye_distance = float(eye_distance)
        self.observer_distance = float(observer_distance)
        self.tolerance = float(tolerance)

    @property
    def eye_y(self) -> float:
        return self.field.height / 2.0

    def eye_x(self, direction: Direction) -> float:
        if direction is Direction.LEFT:
            return (self.field.width - self.eye_distance) / 2.0
        return (self.field.width + self.eye_distance) / 2.0

    def find_intersections(self, xstart, ystart, direction: Direction):
        """
        Vectorised crossing search for many start points on the window plane.

        Each start point (xstart, ystart, 0) together with the chosen eye defines a
        sightline. The lower bracket end starts at the window point and is pushed
        away from the eye by doubling until it drops below the surface or leaves the
        footprint; the bracket is then bisected in x, y and z together until its
        z-gap is below the tolerance. Midpoints outside the footprint are treated as
        below the surface without sampling.

        Returns
        -------
        x, y, z : ndarray
            Crossing points (midpoint of the final bracket), shaped like the inputs.
        hit : ndarray of bool
            False where the sightline does not meet the surface inside the footprint,
            including crossings that only touch the footprint's edge.
        """
        xs, ys = np.broadcast_arrays(np.asarray(xstart, dtype=np.float64),
                                     np.asarray(ystart, dtype=np.float64))
        shape = xs.shape
        field = self.field
        if xs.size == 0:
            empty = np.zeros(shape)
            return empty, empty.copy(), empty.copy(), np.zeros(shape, dtype=bool)

        lx = xs.ravel().copy()
        ly = ys.ravel().copy()
        lz = np.zeros_like(lx)
        ux = np.full_like(lx, self.eye_x(direction))
        uy = np.full_like(lx, self.eye_y)
        uz = np.full_like(lx, self.observer_distance)

        # A start point right under the eye has a vertical sightline: the crossing is
        # the surface point itself, and the bracket collapses onto it.
        under = (lx == ux) & (ly == uy)
        lost = under & ~field.contains(lx, ly)
        settled = under & ~lost
        if settled.any():
            h = field.sample(lx[settled], ly[settled])
            lz[settled] = h
            uz[settled] = h
        uz[lost] = lz[lost]

        active = ~under & field.contains(lx, ly)
        for _ in range(MAX_BRACKET_STEPS):
            if not active.any():
                break
            idx = np.flatnonzero(active)
            above = lz[idx] > field.sample(lx[idx], ly[idx])
            active[idx[~above]] = False
            step = idx[above]
            lx[step] = 2.0 * lx[step] - ux[step]
            ly[step] = 2.0 * ly[step] - uy[step]
            lz[step] = 2.0 * lz[step] - uz[step]
            active[step] = field.contains(lx[step], ly[step])

        gap = uz - lz
        pending = gap > self.tolerance
        limit = _bisection_limit(float(gap.max()), self.tolerance)
        for _ in range(limit):
            if not pending.any():
                break
            idx = np.flatnonzero(pending)
            mx = (lx[idx] + ux[idx]) / 2.0
            my = (ly[idx] + uy[idx]) / 2.0
            mz = (lz[idx] + uz[idx]) / 2.0

            below = ~field.contains(mx, my)
            inside = ~below
            if inside.any():
                below[inside] = field.sample(mx[inside], my[inside]) > mz[inside]

            lo, hi = idx[below], idx[~below]
            lx[lo], ly[lo], lz[lo] = mx[below], my[below], mz[below]
            ux[hi], uy[hi], uz[hi] = mx[~below], my[~below], mz[~below]
            pending[idx] = (uz[idx] - lz[idx]) > self.tolerance
        else:
            if pending.any():
                logger.warning("bisection hit its %d-round cap with %d sightlines unconverged",
                               limit, int(pending.sum()))

        hit = field.interior(lx, ly) & ~lost
        x = ((lx + ux) / 2.0).reshape(shape)
        y = ((ly + uy) / 2.0).reshape(shape)
        z = ((lz + uz) / 2.0).reshape(shape)
        return x, y, z, hit.reshape(shape)

    def find_intersection(self, xstart: float, ystart: float,
                          direction: Direction) -> Optional[Intersection]:
        """Single-sightline version of ``find_intersections``; None when the surface is missed."""
        x, y, z, hit = self.find_intersections(np.array([xstart]), np.array([ystart]), direction)
        if not hit[0]:
            return None
        return Intersection(float(x[0]), float(y[0]), float(z[0]))


# -----------------------------
# Admissibility checks
# -----------------------------

def check_heights(field: HeightField, observer_distance: float) -> None:
    """
    Raise InvalidHeightField unless every height shares the sign of ``heights[0, 0]``,
    is non-zero, and has magnitude below ``observer_distance``.

    Cells are scanned row-major (rows top to bottom, left to right within a row) and
    the first offending cell is reported; TOO_HIGH takes precedence on that cell.
    """
    h = field.heights
    sign = np.sign(h[0, 0])
    too_high = np.abs(h) >= observer_distance
    # NaN fails the sign test as well
    bad = too_high | ~(sign * h > 0.0)
    if not bad.any():
        return
    y, x = np.argwhere(bad)[0]
    kind = HeightFieldProblem.TOO_HIGH if too_high[y, x] else HeightFieldProblem.NOT_SIGN_CONSISTENT
    raise InvalidHeightField(kind, x, y)


def verify_border(intersector: RayIntersector, winx: int, winy: int) -> Optional[Tuple[int, int]]:
    """
    Find a window border pixel whose sightlines to both eyes miss the surface.

    Checks the left and right edges (x = 0 and x = winx) row by row, then the top and
    bottom edges (y = 0 and y = winy) column by column, and returns the first
    unreachable window coordinate ``(x, y)``, or None when every edge pixel reaches
    the surface from at least one eye.
    """
    offx, offy = intersector.field.offsets(winx, winy)
    rows = np.arange(winy)
    cols = np.arange(winx)

    wx = np.concatenate([np.tile([0, winx], winy), np.repeat(cols, 2)])
    wy = np.concatenate([np.repeat(rows, 2), np.tile([0, winy], winx)])
    mx = (wx + offx).astype(np.float64)
    my = (wy + offy).astype(np.float64)

    left = intersector.find_intersections(mx, my, Direction.LEFT)[3]
    right = intersector.find_intersections(mx, my, Direction.RIGHT)[3]
    blind = ~left & ~right
    if not blind.any():
        return None
    i = int(np.argmax(blind))
    logger.debug("border pixel (%d, %d) cannot reach the surface", wx[i], wy[i])
    return int(wx[i]), int(wy[i])
