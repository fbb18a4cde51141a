"""Tests for floor plane estimation."""

import numpy as np
import pytest

from volume_api.services.reconstruction import ErrorKind, PlaneModel, ReconstructionError, VoxelKey
from volume_api.services.reconstruction.plane_fitting import (
    filter_depth_outliers,
    filter_steep_gradients,
    fit_plane,
    hull_reference_points,
)


class TestFitPlane:
    """Tests for the least-squares plane fit."""

    def test_exact_plane_recovered(self):
        """Noise-free points on z = 2x + 3y + 1 fit exactly."""
        xs, ys = np.meshgrid(np.arange(10.0), np.arange(8.0))
        points = np.stack([xs.ravel(), ys.ravel(), 2 * xs.ravel() + 3 * ys.ravel() + 1], axis=-1)

        plane = fit_plane(points)

        assert (plane.a, plane.b, plane.c) == pytest.approx((2.0, 3.0, 1.0))
        assert plane.rmse == pytest.approx(0.0, abs=1e-9)
        assert plane.point_count == 80

    def test_too_few_points(self):
        """Two points cannot define a plane."""
        with pytest.raises(ReconstructionError) as exc_info:
            fit_plane(np.array([[0.0, 0.0, 1.0], [1.0, 1.0, 1.0]]))

        assert exc_info.value.code == ErrorKind.DEGENERATE_GEOMETRY

    def test_collinear_points_are_singular(self):
        """Points on a line leave the normal equations singular."""
        points = np.array([[t, 2 * t, 5.0] for t in range(6)], dtype=float)

        with pytest.raises(ReconstructionError) as exc_info:
            fit_plane(points)

        assert exc_info.value.code == ErrorKind.DEGENERATE_GEOMETRY
        assert "determinant" in exc_info.value.details

    def test_z_index_rounds_to_nearest(self):
        """Plane height per column is rounded, not truncated."""
        plane = PlaneModel(a=0.0, b=0.5, c=3.4)

        assert plane.z_index(0, 0) == 3
        assert plane.z_index(0, 1) == 4


class TestDepthOutlierFilter:
    """Tests for filter_depth_outliers."""

    def test_drops_samples_in_front_of_floor(self):
        """Samples nearer than the 25th percentile minus the margin are removed."""
        floor = [[x, 0, 1.0] for x in range(40)]
        leaked = [[x, 1, 0.9] for x in range(5)]
        samples = np.array(floor + leaked, dtype=float)

        kept = filter_depth_outliers(samples, threshold=0.01)

        assert len(kept) == 40
        assert np.all(kept[:, 2] == 1.0)

    def test_keeps_samples_within_margin(self):
        """Slightly nearer samples within the margin survive."""
        samples = np.array([[x, 0, 1.0] for x in range(20)] + [[0, 1, 0.995]], dtype=float)

        kept = filter_depth_outliers(samples, threshold=0.01)

        assert len(kept) == 21

    def test_small_sets_unfiltered(self):
        """Ten samples or fewer pass through."""
        samples = np.array([[x, 0, 1.0 if x else 0.5] for x in range(10)], dtype=float)

        kept = filter_depth_outliers(samples)

        assert len(kept) == 10


class TestGradientFilter:
    """Tests for filter_steep_gradients."""

    def test_drops_samples_on_a_depth_step(self):
        """Samples next to a depth discontinuity are removed."""
        samples = np.array(
            [[x, y, 1.0 if x < 5 else 1.1] for y in range(3) for x in range(10)], dtype=float
        )

        kept = filter_steep_gradients(samples, max_gradient=0.01)

        kept_columns = set(kept[:, 0].astype(int).tolist())
        assert kept_columns == {0, 1, 2, 3, 6, 7, 8, 9}
        assert len(kept) == 24

    def test_gentle_slope_kept(self):
        """A slope below the threshold per pixel is flat enough."""
        samples = np.array([[x, y, 1.0 + 0.005 * x] for y in range(4) for x in range(6)], dtype=float)

        kept = filter_steep_gradients(samples, max_gradient=0.01)

        assert len(kept) == len(samples)

    def test_isolated_sample_kept(self):
        """A sample without neighbors in the set has zero gradient."""
        samples = np.array([[0, 0, 1.0], [10, 10, 2.0]])

        kept = filter_steep_gradients(samples)

        assert len(kept) == 2


class TestHullReferencePoints:
    """Tests for the convex-hull fallback."""

    def test_hull_columns_with_max_z(self):
        """Footprint corners are returned with their column's largest z."""
        voxels = {VoxelKey(x, y, z) for x in range(5) for y in range(5) for z in range(2)}
        voxels |= {VoxelKey(0, 0, 6), VoxelKey(4, 4, 3)}

        points = hull_reference_points(voxels)

        by_column = {(int(x), int(y)): z for x, y, z in points.tolist()}
        assert set(by_column) == {(0, 0), (4, 0), (4, 4), (0, 4)}
        assert by_column[(0, 0)] == 6
        assert by_column[(4, 4)] == 3
        assert by_column[(4, 0)] == 1

    def test_fewer_than_three_columns(self):
        """Tiny footprints come back as they are."""
        points = hull_reference_points({VoxelKey(0, 0, 1), VoxelKey(1, 0, 2)})

        assert len(points) == 2
