"""Integration tests for the ICP driver."""

import numpy as np
import pytest

from pcalign import (Correspondence, DegenerateCorrespondences, EmptyIndex, ICPConfig,
                     ICPRegistration, ICPStatus, InvalidConfiguration, KDTree,
                     NoCorrespondences, PointCloud, RigidTransform, align, build_index,
                     find_correspondences)

from .conftest import anisotropic_cloud


@pytest.fixture
def tight_config():
    return ICPConfig(max_iterations=100, convergence_threshold=1e-12)


@pytest.mark.parametrize("kwargs", [
    {"max_iterations": 0},
    {"max_iterations": -3},
    {"max_iterations": 2.5},
    {"convergence_threshold": 0.0},
    {"convergence_threshold": -1e-3},
    {"convergence_threshold": float("nan")},
    {"max_correspondence_distance": 0.0},
    {"trim_ratio": 0.0},
    {"trim_ratio": 1.5},
    {"absolute_error_threshold": -1.0},
    {"duplicate_tolerance": -1e-9},
    {"loss": "cauchy"},
    {"loss_scale": 0.0},
    {"leaf_size": 0},
    {"n_jobs": 0},
])
def test_invalid_configuration(kwargs):
    with pytest.raises(InvalidConfiguration):
        ICPConfig(**kwargs)


def test_invalid_configuration_is_value_error():
    with pytest.raises(ValueError):
        ICPConfig(max_iterations=0)


def test_default_configuration():
    config = ICPConfig()
    assert config.max_iterations == 50
    assert config.convergence_threshold == 1e-6
    assert config.max_correspondence_distance is None


@pytest.mark.parametrize("cloud_name", ["cloud_2d", "cloud_3d"])
def test_identity_fixed_point(request, cloud_name):
    cloud = request.getfixturevalue(cloud_name)
    result = align(cloud, KDTree(cloud))
    assert result.converged
    assert result.status is ICPStatus.CONVERGED
    assert result.iterations == 1
    assert result.mean_error == pytest.approx(0.0, abs=1e-12)
    assert result.transform.is_close(RigidTransform.identity(cloud.shape[1]), atol=1e-9)
    assert result.fitness == 1.0


def test_recovers_known_3d_transform(cloud_3d, small_motion_3d, tight_config):
    moved = small_motion_3d.apply(cloud_3d)
    result = align(moved, KDTree(cloud_3d), config=tight_config)
    assert result.converged
    assert result.mean_error < 1e-12
    assert result.transform.is_close(small_motion_3d.inverse(), atol=1e-6)


def test_recovers_known_2d_transform(cloud_2d, small_motion_2d, tight_config):
    moved = small_motion_2d.apply(cloud_2d)
    result = align(moved, cloud_2d, config=tight_config)
    assert result.converged
    assert result.transform.is_close(small_motion_2d.inverse(), atol=1e-6)


def test_recovers_with_float32_clouds(cloud_3d, small_motion_3d):
    target = cloud_3d.astype(np.float32)
    moved = small_motion_3d.apply(cloud_3d).astype(np.float32)
    result = align(moved, KDTree(target), config=ICPConfig(max_iterations=100))
    assert result.converged
    assert result.transform.is_close(small_motion_3d.inverse(), atol=1e-4)


def test_initial_transform_is_used(cloud_3d, large_motion_3d):
    moved = large_motion_3d.apply(cloud_3d)
    result = align(moved, KDTree(cloud_3d), initial_transform=large_motion_3d.inverse())
    assert result.converged
    assert result.iterations == 1
    assert result.transform.is_close(large_motion_3d.inverse(), atol=1e-9)


def test_initial_transform_as_matrix(cloud_2d, small_motion_2d):
    moved = small_motion_2d.apply(cloud_2d)
    result = align(moved, cloud_2d, initial_transform=small_motion_2d.inverse().as_matrix())
    assert result.iterations == 1


def test_initial_transform_dimension_mismatch(cloud_2d):
    with pytest.raises(ValueError):
        align(cloud_2d, cloud_2d, initial_transform=RigidTransform.identity(3))


def test_is_deterministic(cloud_3d, large_motion_3d):
    moved = large_motion_3d.apply(cloud_3d)
    first = align(moved, KDTree(cloud_3d))
    second = align(moved, KDTree(cloud_3d))
    assert first.iterations == second.iterations
    assert first.history == second.history
    for a, b in zip(first.transforms, second.transforms):
        assert a == b


def test_parallel_correspondences_give_identical_results(cloud_3d, large_motion_3d):
    moved = large_motion_3d.apply(cloud_3d)
    serial = align(moved, cloud_3d, config=ICPConfig(n_jobs=1))
    parallel = align(moved, cloud_3d, config=ICPConfig(n_jobs=2))
    assert serial.transform == parallel.transform
    assert serial.history == parallel.history


def test_max_iterations_is_not_an_error(cloud_3d, large_motion_3d):
    moved = large_motion_3d.apply(cloud_3d)
    result = align(moved, KDTree(cloud_3d), config=ICPConfig(max_iterations=1))
    assert not result.converged
    assert result.status is ICPStatus.MAX_ITERATIONS_REACHED
    assert result.iterations == 1
    assert len(result.history) == 1
    assert len(result.transforms) == 2


def test_error_history_decreases(cloud_3d, large_motion_3d):
    moved = large_motion_3d.apply(cloud_3d)
    result = align(moved, KDTree(cloud_3d), config=ICPConfig(max_iterations=10))
    assert len(result.history) == result.iterations
    # Point-to-point ICP never increases the error
    assert all(b <= a + 1e-12 for a, b in zip(result.history, result.history[1:]))


def test_absolute_error_threshold(cloud_3d, large_motion_3d):
    moved = large_motion_3d.apply(cloud_3d)
    loose = align(moved, cloud_3d, config=ICPConfig(absolute_error_threshold=1e3))
    assert loose.converged
    assert loose.iterations == 1


def test_rejection_handles_partial_overlap(rng, cloud_3d, small_motion_3d, tight_config):
    outliers = rng.uniform(-1.0, 1.0, size=(40, 3)) + 20.0
    source = np.vstack([small_motion_3d.apply(cloud_3d), outliers])
    config = ICPConfig(max_iterations=100, convergence_threshold=1e-12, max_correspondence_distance=1.0)
    result = align(source, cloud_3d, config=config)
    assert result.converged
    assert result.correspondence_count == cloud_3d.shape[0]
    assert result.fitness == pytest.approx(200 / 240)
    assert result.transform.is_close(small_motion_3d.inverse(), atol=1e-6)


def test_trimmed_icp(rng, cloud_3d, small_motion_3d):
    outliers = rng.uniform(-1.0, 1.0, size=(20, 3)) + 5.0
    source = np.vstack([small_motion_3d.apply(cloud_3d), outliers])
    config = ICPConfig(max_iterations=100, convergence_threshold=1e-12, trim_ratio=0.85)
    result = align(source, cloud_3d, config=config)
    assert result.correspondence_count == int(np.ceil(0.85 * 220))
    assert result.transform.is_close(small_motion_3d.inverse(), atol=1e-6)


@pytest.mark.parametrize("loss", ["huber", "tukey"])
def test_robust_losses_converge(cloud_3d, small_motion_3d, loss):
    moved = small_motion_3d.apply(cloud_3d)
    config = ICPConfig(max_iterations=100, convergence_threshold=1e-12, loss=loss)
    result = align(moved, cloud_3d, config=config)
    assert result.transform.is_close(small_motion_3d.inverse(), atol=1e-6)


def test_no_correspondences(cloud_3d):
    config = ICPConfig(max_correspondence_distance=1.0)
    with pytest.raises(NoCorrespondences):
        align(cloud_3d + 100.0, cloud_3d, config=config)


def test_empty_source(cloud_3d):
    with pytest.raises(NoCorrespondences):
        align(np.empty((0, 3)), cloud_3d)


def test_empty_target(cloud_3d):
    with pytest.raises(EmptyIndex):
        align(cloud_3d, KDTree(dimension=3))
    with pytest.raises(EmptyIndex):
        align(cloud_3d, np.empty((0, 3)))


def test_degenerate_source(cloud_3d):
    line = np.outer(np.linspace(-1.0, 1.0, 20), [1.0, 0.5, 0.25])
    with pytest.raises(DegenerateCorrespondences):
        align(line, cloud_3d)


def test_dimension_mismatch(cloud_2d, cloud_3d):
    with pytest.raises(ValueError):
        align(cloud_2d, cloud_3d)


def test_callback_observes_every_iteration(cloud_3d, large_motion_3d):
    moved = large_motion_3d.apply(cloud_3d)
    seen = []

    def callback(state):
        seen.append((state.iteration, state.status, state.mean_error))

    result = align(moved, cloud_3d, config=ICPConfig(max_iterations=5), callback=callback)
    assert [s[0] for s in seen] == list(range(1, result.iterations + 1))
    assert all(s[1] is ICPStatus.ITERATING for s in seen[:-1])
    assert seen[-1][1] is result.status
    assert [s[2] for s in seen] == result.history


def test_find_correspondences(cloud_3d):
    index = build_index(cloud_3d)
    moved = cloud_3d + np.array([0.0, 0.0, 1e-3])
    correspondences = find_correspondences(moved, index)
    assert len(correspondences) == cloud_3d.shape[0]
    first = next(iter(correspondences))
    assert isinstance(first, Correspondence)
    assert first.source_index == first.target_index == 0
    assert first.distance_sq == pytest.approx(1e-6)
    np.testing.assert_array_equal(correspondences.target_points, cloud_3d)


def test_registration_class(cloud_3d, small_motion_3d):
    config = ICPConfig(max_iterations=100, convergence_threshold=1e-12)
    icp = ICPRegistration(PointCloud(small_motion_3d.apply(cloud_3d)), cloud_3d, config=config)
    result = icp.register()
    assert result.transform.is_close(small_motion_3d.inverse(), atol=1e-6)
    # The target index is built once
    assert icp.index is icp.index


def test_registration_uses_initial_transform(cloud_3d, large_motion_3d):
    icp = ICPRegistration(large_motion_3d.apply(cloud_3d), cloud_3d)
    icp.initial_transform = large_motion_3d.inverse()
    assert icp.register().iterations == 1


def test_registration_dimension_mismatch(cloud_2d, cloud_3d):
    with pytest.raises(ValueError):
        ICPRegistration(cloud_2d, cloud_3d)


def test_coarse_to_fine(rng, small_motion_3d):
    target = anisotropic_cloud(rng, 2000, (1.0, 0.5, 0.25))
    config = ICPConfig(max_iterations=100, convergence_threshold=1e-12)
    icp = ICPRegistration(small_motion_3d.apply(target), target, config=config)
    result = icp.register_coarse_to_fine([0.1, 0.3])
    assert result.transform.is_close(small_motion_3d.inverse(), atol=1e-6)
    assert len(result.history) == result.iterations
    assert len(result.transforms) == result.iterations + 1


def test_save_and_load_result(tmp_path, cloud_3d, small_motion_3d):
    icp = ICPRegistration(small_motion_3d.apply(cloud_3d), cloud_3d)
    result = icp.register()
    filepath = tmp_path / "result.pkl"
    icp.save_result(filepath, result)
    loaded = ICPRegistration.load_result(filepath)
    np.testing.assert_array_equal(loaded['transformation'], result.transform.as_matrix())
    assert loaded['iterations'] == result.iterations
    assert loaded['status'] == result.status.value
    assert ICPRegistration.load_result(tmp_path / "missing.pkl") is None


def test_registration_from_files(tmp_path, cloud_3d, small_motion_3d):
    source_path = tmp_path / "source.npy"
    target_path = tmp_path / "target.npy"
    np.save(source_path, small_motion_3d.apply(cloud_3d))
    np.save(target_path, cloud_3d)
    config = ICPConfig(max_iterations=100, convergence_threshold=1e-12)
    result = ICPRegistration(str(source_path), target_path, config=config).register()
    assert result.transform.is_close(small_motion_3d.inverse(), atol=1e-6)
