"""Tests for depth sample projection and capture models."""

import numpy as np
import pytest

from volume_api.services.reconstruction import CameraIntrinsics, DepthCapture, DepthSample
from volume_api.services.reconstruction.projection import project_samples


def make_intrinsics(reference: int = 200, depth: int = 200, focal: float = 16.0) -> CameraIntrinsics:
    return CameraIntrinsics(
        fx=focal,
        fy=focal,
        cx=reference / 2,
        cy=reference / 2,
        reference_width=reference,
        reference_height=reference,
        depth_width=depth,
        depth_height=depth,
    )


class TestProjectSamples:
    """Tests for project_samples."""

    def test_principal_point_projects_to_optical_axis(self):
        """A sample at the principal point lands at (0, 0, depth)."""
        samples = np.array([[100.0, 100.0, 0.75]])

        points = project_samples(samples, make_intrinsics())

        assert points[0] == pytest.approx([0.0, 0.0, 0.75])

    def test_xy_scaled_by_batch_minimum_depth(self):
        """X/Y use the closest depth in the batch, Z keeps each sample's own depth."""
        samples = np.array([[110.0, 100.0, 1.0], [100.0, 90.0, 0.8]])

        points = project_samples(samples, make_intrinsics())

        # 10 px * 0.8 m / 16 px
        assert points[0] == pytest.approx([0.5, 0.0, 1.0])
        assert points[1] == pytest.approx([0.0, -0.5, 0.8])

    def test_explicit_reference_depth(self):
        """A supplied reference depth overrides the batch minimum."""
        samples = np.array([[116.0, 100.0, 1.0]])

        points = project_samples(samples, make_intrinsics(), reference_depth=2.0)

        assert points[0, 0] == pytest.approx(2.0)

    def test_intrinsics_rescaled_to_depth_resolution(self):
        """Intrinsics calibrated at 400 px apply to a 200 px depth map at half scale."""
        intrinsics = make_intrinsics(reference=400, depth=200, focal=32.0)
        samples = np.array([[110.0, 100.0, 0.8]])

        points = project_samples(samples, intrinsics)

        assert intrinsics.scaled() == pytest.approx((16.0, 16.0, 100.0, 100.0))
        assert points[0] == pytest.approx([0.5, 0.0, 0.8])

    def test_empty_input_yields_empty_output(self):
        """No samples is not an error."""
        points = project_samples(np.empty((0, 3)), make_intrinsics())

        assert points.shape == (0, 3)


class TestCameraIntrinsics:
    """Tests for CameraIntrinsics validation."""

    def test_rejects_non_positive_focal_length(self):
        """Focal lengths must be positive."""
        with pytest.raises(ValueError):
            make_intrinsics(focal=0.0)


class TestDepthCapture:
    """Tests for DepthCapture ingestion and selection."""

    def test_invalid_samples_dropped(self):
        """NaN, infinite, zero and negative depths are dropped at ingestion."""
        samples = [
            DepthSample(0, 0, 1.0),
            DepthSample(1, 0, float("nan")),
            DepthSample(2, 0, float("inf")),
            DepthSample(3, 0, 0.0),
            DepthSample(4, 0, -1.0),
        ]

        capture = DepthCapture.from_samples(samples)

        assert len(capture) == 1
        assert capture.samples[0].tolist() == [0.0, 0.0, 1.0]

    def test_from_depth_map_binds_depth_size(self):
        """A dense depth map fixes the depth-map size on the intrinsics."""
        depth_map = np.ones((20, 30))
        depth_map[0, 0] = 0.0

        capture = DepthCapture.from_depth_map(depth_map, make_intrinsics(reference=60))

        assert len(capture) == 599
        assert (capture.width, capture.height) == (30, 20)

    def test_select_by_mask(self):
        """Only samples under the mask are returned."""
        capture = DepthCapture.from_depth_map(np.ones((4, 4)))
        mask = np.zeros((4, 4), dtype=bool)
        mask[1, 2] = True

        selected = capture.select(mask)

        assert selected.tolist() == [[2.0, 1.0, 1.0]]
