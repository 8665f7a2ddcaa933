"""Height field sampling, sightline crossings and height-field admissibility."""

import logging

import numpy as np
import pytest

from autostereo_surface import (
    ConfigurationError,
    Direction,
    HeightField,
    HeightFieldProblem,
    Intersection,
    InvalidHeightField,
    RayIntersector,
    check_heights,
    verify_border,
)


class TestHeightField:
    """Bilinear sampling and map/window bookkeeping."""

    def test_interior_blend_of_four_corners(self):
        field = HeightField([[0.0, 1.0], [2.0, 3.0]])
        assert field.sample(0.5, 0.5) == pytest.approx(1.5)
        assert field.sample(0.25, 0.0) == pytest.approx(0.25)

    def test_linear_surface_reproduced_inside(self):
        field = HeightField(np.arange(9.0).reshape(3, 3))  # h = 3y + x
        assert field.sample(1.25, 0.5) == pytest.approx(2.75)
        assert field.sample(0.0, 1.0) == pytest.approx(3.0)

    def test_last_column_interpolates_along_y_only(self):
        field = HeightField(np.arange(9.0).reshape(3, 3))
        # heights[0, 2] = 2, heights[1, 2] = 5; the x fraction is ignored
        assert field.sample(2.5, 0.5) == pytest.approx(3.5)

    def test_last_row_interpolates_along_x_only(self):
        field = HeightField(np.arange(9.0).reshape(3, 3))
        assert field.sample(0.5, 2.75) == pytest.approx(6.5)

    def test_last_corner_is_exact(self):
        field = HeightField(np.arange(9.0).reshape(3, 3))
        assert field.sample(2.7, 2.9) == 8.0

    def test_array_sampling(self):
        field = HeightField(np.arange(9.0).reshape(3, 3))
        out = field.sample(np.array([0.0, 1.0]), np.array([0.0, 2.0]))
        assert isinstance(out, np.ndarray)
        np.testing.assert_allclose(out, [0.0, 7.0])

    def test_scalar_sampling_returns_float(self):
        assert isinstance(HeightField(np.ones((2, 2))).sample(0.5, 0.5), float)

    def test_offsets_center_the_map(self):
        field = HeightField(np.ones((100, 200)))
        assert field.offsets(120, 80) == (40, 10)

    def test_offsets_truncate_toward_zero(self):
        field = HeightField(np.ones((80, 115)))
        assert field.offsets(120, 80) == (-2, 0)

    def test_footprint_predicates(self):
        field = HeightField(np.ones((10, 20)))
        assert field.contains(0.0, 0.0)
        assert not field.contains(20.0, 5.0)
        assert not field.interior(0.0, 5.0)
        assert field.interior(0.5, 5.0)

    @pytest.mark.parametrize("bad", [np.ones(5), np.ones((0, 3)), np.ones((2, 2, 2))])
    def test_rejects_non_grids(self, bad):
        with pytest.raises(ConfigurationError):
            HeightField(bad)


class TestRayIntersector:
    """Bracket-and-bisect crossing search."""

    def _flat(self, h=50.0, shape=(100, 200), eye=40, observer=500):
        return RayIntersector(HeightField(np.full(shape, h)), eye, observer)

    def test_eye_positions(self):
        ri = self._flat()
        assert ri.eye_x(Direction.LEFT) == 80.0
        assert ri.eye_x(Direction.RIGHT) == 120.0
        assert ri.eye_y == 50.0
        assert Direction.LEFT.opposite is Direction.RIGHT

    def test_flat_surface_crossing(self):
        hit = self._flat().find_intersection(30.0, 20.0, Direction.LEFT)
        assert isinstance(hit, Intersection)
        assert hit.z == pytest.approx(50.0, abs=1e-3)
        assert hit.x == pytest.approx(35.0, abs=1e-3)
        assert hit.y == pytest.approx(23.0, abs=1e-3)

    def test_tilted_plane_matches_analytic_crossing(self):
        _, X = np.mgrid[:100, :200].astype(np.float64)
        ri = RayIntersector(HeightField(50.0 + 0.1 * X), 40, 500)
        hit = ri.find_intersection(30.0, 20.0, Direction.RIGHT)
        # x(t) = 30 + 90 t, z(t) = 500 t, surface 50 + 0.1 x(t)
        t = 53.0 / 491.0
        assert hit.z == pytest.approx(500.0 * t, abs=1e-3)
        assert hit.x == pytest.approx(30.0 + 90.0 * t, abs=1e-2)

    def test_start_under_the_eye(self):
        hit = self._flat().find_intersection(80.0, 50.0, Direction.LEFT)
        assert hit == Intersection(80.0, 50.0, 50.0)

    def test_start_under_an_eye_outside_the_map(self):
        ri = self._flat(shape=(100, 20))  # left eye sits at x = -10
        assert ri.find_intersection(-10.0, 50.0, Direction.LEFT) is None

    def test_wall_eyed_crossing_behind_the_window(self):
        ri = self._flat(h=-50.0, shape=(200, 400))
        hit = ri.find_intersection(150.0, 100.0, Direction.LEFT)
        assert hit.z == pytest.approx(-50.0, abs=1e-3)
        assert hit.x == pytest.approx(147.0, abs=1e-2)
        assert hit.y == pytest.approx(100.0, abs=1e-6)

    def test_miss_outside_the_footprint(self):
        ri = self._flat(h=10.0, shape=(50, 50), eye=10, observer=100)
        assert ri.find_intersection(-100.0, 25.0, Direction.LEFT) is None

    def test_vectorised_matches_scalar(self):
        ri = self._flat()
        xs = np.array([10.0, 60.0, 150.0, 199.0])
        ys = np.array([5.0, 50.0, 70.0, 99.0])
        x, y, z, hit = ri.find_intersections(xs, ys, Direction.RIGHT)
        for i in range(xs.size):
            single = ri.find_intersection(xs[i], ys[i], Direction.RIGHT)
            assert (single is not None) == hit[i]
            if single is not None:
                assert single == pytest.approx((x[i], y[i], z[i]))

    def test_bisection_capped_when_precision_runs_out(self, caplog):
        # Float resolution stalls the z-gap far above this tolerance.
        ri = RayIntersector(HeightField(np.full((100, 200), 50.0)), 40, 500, tolerance=1e-300)
        with caplog.at_level(logging.WARNING, logger="autostereo_surface"):
            hit = ri.find_intersection(30.0, 20.0, Direction.LEFT)
        assert hit.z == pytest.approx(50.0, abs=1e-6)
        assert "cap" in caplog.text

    @pytest.mark.parametrize("tolerance", [0.0, -1.0])
    def test_non_positive_tolerance(self, tolerance):
        with pytest.raises(ConfigurationError):
            RayIntersector(HeightField(np.ones((4, 4))), 2, 10, tolerance=tolerance)

    def test_vectorised_keeps_input_shape(self):
        ri = self._flat()
        x, y, z, hit = ri.find_intersections(np.full((3, 4), 30.0), np.full((3, 4), 20.0), Direction.LEFT)
        assert x.shape == y.shape == z.shape == hit.shape == (3, 4)
        assert hit.all()


class TestCheckHeights:
    """Sign and maximum-height checks."""

    def test_valid_field_passes(self):
        assert check_heights(HeightField(np.full((10, 10), 5.0)), 100) is None

    def test_sign_violation_reports_cell(self):
        heights = np.ones((20, 20))
        heights[5, 5] = -1.0
        with pytest.raises(InvalidHeightField) as info:
            check_heights(HeightField(heights), 100)
        assert info.value.kind is HeightFieldProblem.NOT_SIGN_CONSISTENT
        assert info.value.coordinate == (5, 5)

    def test_zero_reported_as_x_y(self):
        heights = np.ones((10, 10))
        heights[3, 7] = 0.0
        with pytest.raises(InvalidHeightField) as info:
            check_heights(HeightField(heights), 100)
        assert info.value.kind is HeightFieldProblem.NOT_SIGN_CONSISTENT
        assert (info.value.x, info.value.y) == (7, 3)

    def test_height_at_observer_distance(self):
        with pytest.raises(InvalidHeightField) as info:
            check_heights(HeightField(np.full((10, 10), 100.0)), 100)
        assert info.value.kind is HeightFieldProblem.TOO_HIGH
        assert info.value.coordinate == (0, 0)

    def test_negative_magnitude_too_high(self):
        heights = -np.ones((10, 10))
        heights[2, 4] = -100.0
        with pytest.raises(InvalidHeightField) as info:
            check_heights(HeightField(heights), 100)
        assert info.value.kind is HeightFieldProblem.TOO_HIGH
        assert info.value.coordinate == (4, 2)

    def test_row_major_scan_order(self):
        heights = np.ones((10, 10))
        heights[4, 2] = -1.0
        heights[1, 8] = -1.0
        with pytest.raises(InvalidHeightField) as info:
            check_heights(HeightField(heights), 100)
        assert info.value.coordinate == (8, 1)

    def test_nan_is_not_sign_consistent(self):
        heights = np.ones((4, 4))
        heights[2, 1] = np.nan
        with pytest.raises(InvalidHeightField) as info:
            check_heights(HeightField(heights), 100)
        assert info.value.kind is HeightFieldProblem.NOT_SIGN_CONSISTENT

    def test_message_names_the_cell(self):
        err = InvalidHeightField(HeightFieldProblem.TOO_SMALL, 0, 12)
        assert "(0, 12)" in str(err)


class TestVerifyBorder:
    """Border reachability."""

    def test_positive_field_covering_window(self):
        ri = RayIntersector(HeightField(np.full((40, 60), 30.0)), 20, 200)
        assert verify_border(ri, 60, 40) is None

    def test_negative_field_smaller_than_window(self):
        ri = RayIntersector(HeightField(np.full((30, 40), -20.0)), 20, 200)
        blind = verify_border(ri, 60, 40)
        assert blind is not None
        x, y = blind
        assert x in (0, 60) or y in (0, 40)
