"""Shared fixtures for the pcalign tests."""

import numpy as np
import pytest

from pcalign import RigidTransform, rotation_2d, rotation_3d


def anisotropic_cloud(rng, n_points, scales):
    """Random Gaussian blob with a different spread per axis, so no symmetry helps ICP."""
    return rng.normal(size=(n_points, len(scales))) * np.asarray(scales)


@pytest.fixture
def rng():
    return np.random.default_rng(seed=42)


@pytest.fixture
def cloud_3d(rng):
    return anisotropic_cloud(rng, 200, (1.0, 0.5, 0.25))


@pytest.fixture
def cloud_2d(rng):
    return anisotropic_cloud(rng, 150, (1.0, 0.4))


@pytest.fixture
def small_motion_3d():
    return RigidTransform(rotation_3d([1.0, 2.0, 3.0], np.deg2rad(2.0)), [0.02, -0.01, 0.03])


@pytest.fixture
def small_motion_2d():
    return RigidTransform(rotation_2d(np.deg2rad(2.0)), [0.02, -0.015])


@pytest.fixture
def large_motion_3d():
    return RigidTransform(rotation_3d([0.0, 0.0, 1.0], np.deg2rad(30.0)), [0.5, 0.2, -0.1])
