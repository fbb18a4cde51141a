"""Voxel reconstruction of a closed solid from a projected point cloud.

Stages: adaptive voxel size, spatial hashing, surface dilation, ray-cast
interior fill and optional column restriction.
"""

import itertools
import logging
import threading
import time
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor

import numpy as np

from .models import ErrorKind, ReconstructionError, VoxelGrid, VoxelKey, VoxelSolid, XYKey

logger = logging.getLogger(__name__)

DEFAULT_TARGET_DENSITY = 0.1

NEIGHBOR_OFFSETS_26 = tuple(
    offset for offset in itertools.product((-1, 0, 1), repeat=3) if offset != (0, 0, 0)
)


def compute_voxel_size(points: np.ndarray, target_density: float = DEFAULT_TARGET_DENSITY) -> float:
    """
    Derive the voxel edge length from the capture's point density.

    voxel_size = cbrt(target_density / (count / bbox_volume))

    Raises:
        ReconstructionError: If the bounding box has no volume
    """
    extent = points.max(axis=0) - points.min(axis=0)
    bbox_volume = float(np.prod(extent))
    if bbox_volume <= 0:
        raise ReconstructionError(
            code=ErrorKind.DEGENERATE_GEOMETRY,
            message="Point cloud bounding box has zero volume",
            details={"extent": extent.tolist(), "point_count": len(points)},
        )
    point_density = len(points) / bbox_volume
    return float(np.cbrt(target_density / point_density))


def build_grid(points: np.ndarray, voxel_size: float) -> VoxelGrid:
    """Anchor a grid at the bounding-box minimum, sized to cover every point."""
    minimum = points.min(axis=0)
    extent = points.max(axis=0) - minimum
    dims = tuple(max(1, int(np.ceil(e / voxel_size))) for e in extent)
    return VoxelGrid(origin=tuple(float(v) for v in minimum), voxel_size=voxel_size, dims=dims)


def build_spatial_hash(points: np.ndarray, grid: VoxelGrid) -> dict[VoxelKey, list[int]]:
    """Map each occupied cell to the indices of the points it contains."""
    spatial_hash: dict[VoxelKey, list[int]] = defaultdict(list)
    for i, (x, y, z) in enumerate(grid.index(points).tolist()):
        spatial_hash[VoxelKey(x, y, z)].append(i)
    return dict(spatial_hash)


def dilate(cells: set[VoxelKey], grid: VoxelGrid) -> set[VoxelKey]:
    """Grow a cell set by one step over the 26-neighborhood, clipped to the grid."""
    grown = set(cells)
    for x, y, z in cells:
        for dx, dy, dz in NEIGHBOR_OFFSETS_26:
            neighbor = VoxelKey(x + dx, y + dy, z + dz)
            if grid.contains(neighbor):
                grown.add(neighbor)
    return grown


def fill_interior(surface: set[VoxelKey], max_workers: int = 4) -> set[VoxelKey]:
    """
    Ray-cast interior fill toward decreasing z.

    An empty cell strictly inside the surface bounding box is interior when a
    ray from it toward smaller z meets a surface cell before leaving the box.
    Columns are independent and are evaluated on a thread pool.

    Returns:
        Set of interior cells (surface cells excluded)
    """
    if not surface:
        return set()

    keys = np.array(list(surface), dtype=np.int64)
    min_x, min_y, min_z = keys.min(axis=0).tolist()
    max_x, max_y, max_z = keys.max(axis=0).tolist()

    # Lowest surface z of every column inside the box
    columns: dict[XYKey, int] = {}
    for x, y, z in surface:
        if min_x < x < max_x and min_y < y < max_y:
            key = XYKey(x, y)
            if key not in columns or z < columns[key]:
                columns[key] = z

    interior: set[VoxelKey] = set()
    lock = threading.Lock()

    def cast_column_rays(batch: list[tuple[XYKey, int]]) -> None:
        found = []
        for (x, y), lowest in batch:
            for z in range(max(lowest + 1, min_z + 1), max_z):
                key = VoxelKey(x, y, z)
                if key not in surface:
                    found.append(key)
        with lock:
            interior.update(found)

    items = list(columns.items())
    workers = max(1, min(max_workers, len(items)))
    chunk = max(1, -(-len(items) // workers))
    with ThreadPoolExecutor(max_workers=workers) as pool:
        # list() surfaces worker exceptions
        list(pool.map(cast_column_rays, [items[i:i + chunk] for i in range(0, len(items), chunk)]))

    return interior


def restrict_to_columns(
    voxels: set[VoxelKey] | frozenset[VoxelKey], column_points: np.ndarray, grid: VoxelGrid
) -> set[VoxelKey]:
    """Keep only voxels whose (x, y) column holds at least one of the given points."""
    cells = grid.index_unclamped(column_points)
    allowed = {XYKey(x, y) for x, y in cells[:, :2].tolist()}
    return {v for v in voxels if XYKey(v.x, v.y) in allowed}


class VoxelReconstructor:
    """Turns a projected point cloud into a closed voxel solid."""

    def __init__(self, target_density: float = DEFAULT_TARGET_DENSITY, max_workers: int = 4) -> None:
        self.target_density = target_density
        self.max_workers = max_workers

    def reconstruct(
        self,
        primary: np.ndarray,
        contents: np.ndarray | None = None,
        voxel_size: float | None = None,
    ) -> VoxelSolid:
        """
        Reconstruct a voxel solid.

        Args:
            primary: (N, 3) object points in meters
            contents: Optional (M, 3) points whose columns bound the result
            voxel_size: Explicit voxel edge length, skips adaptive sizing

        Returns:
            VoxelSolid (empty when ``primary`` is empty)

        Raises:
            ReconstructionError: If no voxel size can be derived
        """
        primary = np.asarray(primary, dtype=np.float64).reshape(-1, 3)
        if len(primary) == 0:
            return VoxelSolid(voxels=frozenset(), surface=frozenset(), grid=VoxelGrid.empty())

        start_time = time.time()

        if voxel_size is None:
            voxel_size = compute_voxel_size(primary, self.target_density)
        elif voxel_size <= 0:
            raise ReconstructionError(
                code=ErrorKind.DEGENERATE_GEOMETRY,
                message="Voxel size must be positive",
                details={"voxel_size": voxel_size},
            )

        grid = build_grid(primary, voxel_size)
        spatial_hash = build_spatial_hash(primary, grid)
        surface = dilate(set(spatial_hash), grid)
        interior = fill_interior(surface, self.max_workers)
        filled = frozenset(surface | interior)
        voxels = filled

        if contents is not None and len(contents):
            voxels = restrict_to_columns(filled, contents, grid)

        elapsed_ms = int((time.time() - start_time) * 1000)
        logger.info(
            f"Voxelized {len(primary)} points: voxel_size={voxel_size:.5f}m, grid={grid.dims}, "
            f"occupied={len(spatial_hash)}, surface={len(surface)}, interior={len(interior)}, "
            f"final={len(voxels)} in {elapsed_ms}ms"
        )

        return VoxelSolid(
            voxels=frozenset(voxels), surface=frozenset(surface), grid=grid, unrestricted=filled
        )
