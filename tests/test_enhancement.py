import itertools
import math

import numpy as np
import pytest

from scan3d.errors import NumericDegeneracyError
from scan3d.modules.enhancement import EnhancementFilter, gaussian_kernel_1d
from scan3d.types import MedicalVolume


def direct_gaussian(grid, sigma=1.0):
    """Explicit 27-neighbour weighted average over in-bounds voxels."""
    d, h, w = grid.shape
    out = np.zeros(grid.shape, dtype=np.float64)
    for z, y, x in np.ndindex(grid.shape):
        total = weights = 0.0
        for dz, dy, dx in itertools.product((-1, 0, 1), repeat=3):
            zz, yy, xx = z + dz, y + dy, x + dx
            if 0 <= zz < d and 0 <= yy < h and 0 <= xx < w:
                weight = math.exp(-(dx * dx + dy * dy + dz * dz) / (2 * sigma ** 2))
                total += weight * grid[zz, yy, xx]
                weights += weight
        out[z, y, x] = total / weights
    return out


def make_volume(grid):
    d, h, w = grid.shape
    return MedicalVolume(width=w, height=h, depth=d, voxels=grid.ravel(), spacing=(1.0, 1.0, 2.0))


def test_kernel_weights():
    kernel = gaussian_kernel_1d(1.0)
    assert kernel[1] == 1.0
    assert kernel[0] == pytest.approx(math.exp(-0.5))
    assert kernel[0] == kernel[2]


def test_matches_direct_neighbourhood_sum(config):
    grid = np.random.default_rng(42).uniform(0, 255, size=(3, 4, 5)).astype(np.float32)
    filtered = EnhancementFilter(config).apply(make_volume(grid))
    assert np.allclose(filtered.grid, direct_gaussian(grid.astype(np.float64)), rtol=1e-5, atol=1e-3)


def test_uniform_volume_is_unchanged_at_edges(config):
    grid = np.full((4, 5, 6), 100.0, dtype=np.float32)
    filtered = EnhancementFilter(config).apply(make_volume(grid))
    assert np.allclose(filtered.voxels, 100.0, rtol=1e-6)


def test_returns_new_volume_with_same_geometry(config):
    grid = np.random.default_rng(1).uniform(0, 255, size=(4, 4, 4)).astype(np.float32)
    volume = make_volume(grid)
    original = volume.voxels.copy()

    filtered = EnhancementFilter(config).apply(volume)

    assert filtered is not volume
    assert filtered.shape == volume.shape
    assert filtered.spacing == volume.spacing
    assert np.array_equal(volume.voxels, original)


def test_non_finite_input_raises(config):
    grid = np.zeros((3, 3, 3), dtype=np.float32)
    grid[1, 1, 1] = np.inf
    with pytest.raises(NumericDegeneracyError) as excinfo:
        EnhancementFilter(config).apply(make_volume(grid))
    assert excinfo.value.stage == "filtering"
