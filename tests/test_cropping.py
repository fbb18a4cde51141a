"""Tests for floor cropping and volume computation."""

import numpy as np
import pytest

from volume_api.services.reconstruction import (
    CropState,
    PlaneModel,
    VoxelKey,
    XYKey,
    crop_to_floor,
    voxel_volume,
)
from volume_api.services.reconstruction.cropping import build_floor_guard
from volume_api.services.reconstruction.models import VoxelGrid

FLAT_FLOOR = PlaneModel(a=0.0, b=0.0, c=3.0)


def column(x: int, y: int, depth: int) -> set[VoxelKey]:
    return {VoxelKey(x, y, z) for z in range(depth)}


class TestCropToFloor:
    """Tests for crop_to_floor."""

    def test_keeps_voxels_between_surface_and_floor(self):
        """Voxels at or past the plane and above the observed surface are removed."""
        voxels = frozenset(column(0, 0, 6))

        cropped = crop_to_floor(voxels, FLAT_FLOOR, {XYKey(0, 0): 1.2})

        assert cropped == {VoxelKey(0, 0, 2)}

    def test_columns_without_points_dropped(self):
        """A column the primary cloud never touched is removed entirely."""
        voxels = frozenset(column(0, 0, 3) | column(1, 0, 3))

        cropped = crop_to_floor(voxels, FLAT_FLOOR, {XYKey(0, 0): 0.0})

        assert cropped == column(0, 0, 3)

    def test_tilted_plane(self):
        """The plane height is evaluated per column."""
        plane = PlaneModel(a=1.0, b=0.0, c=1.0)
        voxels = frozenset(column(0, 0, 5) | column(2, 0, 5))
        guard = {XYKey(0, 0): 0.0, XYKey(2, 0): 0.0}

        cropped = crop_to_floor(voxels, plane, guard)

        assert {v.z for v in cropped if v.x == 0} == {0}
        assert {v.z for v in cropped if v.x == 2} == {0, 1, 2}

    def test_idempotent(self):
        """Cropping an already cropped set changes nothing."""
        voxels = frozenset(column(0, 0, 6) | column(1, 1, 6))
        guard = {XYKey(0, 0): 0.5, XYKey(1, 1): 0.0}

        once = crop_to_floor(voxels, FLAT_FLOOR, guard)
        twice = crop_to_floor(once, FLAT_FLOOR, guard)

        assert once == twice


class TestVolume:
    """Tests for voxel_volume."""

    def test_count_times_cube(self):
        """Volume is count x size^3."""
        assert voxel_volume(1000, 0.01) == pytest.approx(1e-3)

    def test_doubling_voxel_size_multiplies_volume_by_eight(self):
        """Volume scales with the cube of the voxel size."""
        assert voxel_volume(37, 0.4) == pytest.approx(8 * voxel_volume(37, 0.2))

    def test_empty(self):
        assert voxel_volume(0, 0.5) == 0.0


class TestFloorGuard:
    """Tests for build_floor_guard."""

    def test_minimum_continuous_z_per_column(self):
        """Each column keeps the smallest fractional z of its points."""
        grid = VoxelGrid(origin=(0.0, 0.0, 0.0), voxel_size=0.5, dims=(2, 2, 4))
        points = np.array([[0.1, 0.1, 0.6], [0.2, 0.2, 1.4], [0.7, 0.1, 1.9]])

        guard = build_floor_guard(points, grid)

        assert guard[XYKey(0, 0)] == pytest.approx(1.2)
        assert guard[XYKey(1, 0)] == pytest.approx(3.8)


class TestCropState:
    """Tests for toggling crops without recomputation."""

    @pytest.fixture
    def state(self):
        grid = VoxelGrid(origin=(0.0, 0.0, 0.0), voxel_size=0.1, dims=(1, 1, 6))
        return CropState(
            base_voxels=frozenset(column(0, 0, 6)),
            grid=grid,
            plane=FLAT_FLOOR,
            floor_guard={XYKey(0, 0): 0.0},
        )

    def test_toggle_replaces_result(self, state):
        """Each toggle yields a new, self-consistent snapshot."""
        cropped = state.apply(True)
        uncropped = state.apply(False)

        assert cropped.cropped is True
        assert cropped.voxel_count == 3
        assert cropped.total_volume == pytest.approx(3 * 0.1 ** 3)
        assert uncropped.voxel_count == 6
        assert cropped is not uncropped

    def test_reset_restores_base_set(self, state):
        """Reset returns the full pre-crop voxel set."""
        state.cropped()

        reset = state.reset()

        assert reset.voxels == frozenset(column(0, 0, 6))
        assert reset.cropped is False

    def test_without_plane_stays_uncropped(self, state):
        """No floor plane means no cropping."""
        state.plane = None

        result = state.apply(True)

        assert result.cropped is False
        assert result.voxel_count == 6
