"""Tests for particle sampling and the explode/gather animation."""

import numpy as np
import pytest

from biotwin.particles import ParticleCloud, ParticleSampler
from conftest import make_square_mask


def square():
    return make_square_mask(size=64, start=8, stop=56)


class TestParticleSampler:
    def test_doubling_stride_quarters_count(self):
        rng = np.random.default_rng(0)
        fine = ParticleSampler(stride=4).sample(square(), rng=rng)
        coarse = ParticleSampler(stride=8).sample(square(), rng=rng)
        assert len(fine) == 144
        assert len(coarse) == 36

    def test_positions_in_extent(self):
        cloud = ParticleSampler().sample(square(), rng=np.random.default_rng(1))
        assert np.all(np.abs(cloud.positions[:, :2]) <= 3.0)
        assert np.all(np.abs(cloud.positions[:, 2]) <= 0.25)

    def test_vertical_axis_is_flipped(self):
        mask = np.zeros((64, 64), dtype=np.float32)
        mask[0, 32] = 1.0
        cloud = ParticleSampler().sample(mask, rng=np.random.default_rng(2))
        assert len(cloud) == 1
        x, y, _ = cloud.positions[0]
        assert x == pytest.approx(0.0)
        assert y == pytest.approx(3.0)

    def test_raster_order(self):
        cloud = ParticleSampler(stride=8).sample(square(), rng=np.random.default_rng(3))
        ys = cloud.positions[:, 1]
        assert np.all(np.diff(ys) <= 0)

    def test_empty_mask(self):
        cloud = ParticleSampler().sample(np.zeros((32, 32), dtype=np.float32))
        assert len(cloud) == 0
        assert cloud.flat().shape == (0,)

    def test_flat_layout(self):
        cloud = ParticleSampler().sample(square(), rng=np.random.default_rng(4))
        assert cloud.flat().shape == (len(cloud) * 3,)
        assert len(cloud.to_list()) == len(cloud) * 3

    def test_seeded_jitter_is_deterministic(self):
        a = ParticleSampler().sample(square(), rng=np.random.default_rng(5))
        b = ParticleSampler().sample(square(), rng=np.random.default_rng(5))
        np.testing.assert_array_equal(a.positions, b.positions)

    def test_invalid_stride(self):
        with pytest.raises(ValueError):
            ParticleSampler(stride=0)


class TestParticleCloud:
    def test_originals_are_read_only_copy(self):
        cloud = ParticleCloud(np.ones((4, 3)))
        cloud.positions[0, 0] = 5.0
        assert cloud.original_positions[0, 0] == 1.0
        with pytest.raises(ValueError):
            cloud.original_positions[0, 0] = 2.0

    def test_explode_moves_away_and_gather_returns(self):
        rng = np.random.default_rng(6)
        cloud = ParticleCloud(np.array([[1.0, 1.0, 0.0]]))
        for _ in range(60):
            cloud.step(1 / 60, exploded=True, rng=rng)
        assert np.linalg.norm(cloud.positions[0, :2]) > np.sqrt(2)

        for _ in range(600):
            cloud.step(1 / 60, exploded=False)
        np.testing.assert_allclose(cloud.positions, cloud.original_positions, atol=1e-3)

    def test_large_delta_clamped(self):
        cloud = ParticleCloud(np.zeros((2, 3)), original_positions=np.ones((2, 3)))
        cloud.step(10.0, exploded=False)
        np.testing.assert_allclose(cloud.positions, np.ones((2, 3)))

    def test_empty_cloud_step(self):
        cloud = ParticleCloud.empty()
        cloud.step(0.1, exploded=True)
        assert len(cloud) == 0
