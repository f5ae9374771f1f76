"""Iterative Closest Point (ICP) algorithm implementation."""

import logging
import math
import numbers
import os
import pickle
import time
from collections import namedtuple
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import List, Optional

import numpy as np

from .errors import (DegenerateCorrespondences, EmptyIndex, InvalidConfiguration,
                     NoCorrespondences)
from .kdtree import KDTree
from .losses import LOSS_FUNCTIONS, get_loss_function, reject_by_distance, trim_by_ratio
from .point_cloud import PointCloud, as_points
from .transforms import RigidTransform, estimate_rigid_transform

logger = logging.getLogger(__name__)


class ICPStatus(Enum):
    INITIALIZED = 'initialized'
    ITERATING = 'iterating'
    CONVERGED = 'converged'
    MAX_ITERATIONS_REACHED = 'max_iterations_reached'
    FAILED = 'failed'


def _positive(value):
    return isinstance(value, numbers.Real) and not isinstance(value, bool) \
        and math.isfinite(value) and value > 0


def _positive_int(value):
    return isinstance(value, numbers.Integral) and not isinstance(value, bool) and value > 0


@dataclass(frozen=True)
class ICPConfig:
    """
    ICP parameters.

    Attributes:
        max_iterations: Iteration budget; running out is a normal return with
                        ``converged=False``.
        convergence_threshold: Stop when the mean squared error changes by
                               less than this between two iterations.
        max_correspondence_distance: Reject pairs farther apart than this.
        trim_ratio: Keep only this fraction of the closest pairs (Trimmed ICP).
        absolute_error_threshold: Also stop once the mean squared error is at
                                  or below this value.
        duplicate_tolerance: Points closer than this are merged when the
                             target index is built.
        loss: Robust weighting of the pairs: 'none', 'huber' or 'tukey'.
        loss_scale: Huber delta or Tukey c; None for the default.
        leaf_size: Leaf bucket size of the target KD-tree.
        n_jobs: joblib threads for the correspondence search.
    """
    max_iterations: int = 50
    convergence_threshold: float = 1e-6
    max_correspondence_distance: Optional[float] = None
    trim_ratio: Optional[float] = None
    absolute_error_threshold: Optional[float] = None
    duplicate_tolerance: float = 1e-9
    loss: str = 'none'
    loss_scale: Optional[float] = None
    leaf_size: int = 16
    n_jobs: int = 1

    def __post_init__(self):
        if not _positive_int(self.max_iterations):
            raise InvalidConfiguration(f"max_iterations must be a positive integer, got {self.max_iterations!r}")
        if not _positive(self.convergence_threshold):
            raise InvalidConfiguration(
                f"convergence_threshold must be positive, got {self.convergence_threshold!r}")
        if self.max_correspondence_distance is not None and not _positive(self.max_correspondence_distance):
            raise InvalidConfiguration(
                f"max_correspondence_distance must be positive, got {self.max_correspondence_distance!r}")
        if self.trim_ratio is not None and not (_positive(self.trim_ratio) and self.trim_ratio <= 1):
            raise InvalidConfiguration(f"trim_ratio must be in (0, 1], got {self.trim_ratio!r}")
        if self.absolute_error_threshold is not None and not _positive(self.absolute_error_threshold):
            raise InvalidConfiguration(
                f"absolute_error_threshold must be positive, got {self.absolute_error_threshold!r}")
        if not (_positive(self.duplicate_tolerance) or self.duplicate_tolerance == 0):
            raise InvalidConfiguration(
                f"duplicate_tolerance must be non-negative, got {self.duplicate_tolerance!r}")
        if self.loss not in LOSS_FUNCTIONS:
            raise InvalidConfiguration(
                f"loss must be one of {sorted(LOSS_FUNCTIONS)}, got {self.loss!r}")
        if self.loss_scale is not None and not _positive(self.loss_scale):
            raise InvalidConfiguration(f"loss_scale must be positive, got {self.loss_scale!r}")
        if not _positive_int(self.leaf_size):
            raise InvalidConfiguration(f"leaf_size must be a positive integer, got {self.leaf_size!r}")
        if not isinstance(self.n_jobs, numbers.Integral) or isinstance(self.n_jobs, bool) or self.n_jobs == 0:
            raise InvalidConfiguration(f"n_jobs must be a non-zero integer, got {self.n_jobs!r}")


Correspondence = namedtuple('Correspondence', ['source_index', 'target_index', 'distance_sq'])


@dataclass
class Correspondences:
    """Matched pairs of one iteration, stored as parallel arrays."""
    source_indices: np.ndarray
    target_indices: np.ndarray
    distances_sq: np.ndarray
    target_points: np.ndarray

    def __len__(self):
        return self.source_indices.shape[0]

    def __iter__(self):
        for s, t, d in zip(self.source_indices.tolist(), self.target_indices.tolist(),
                           self.distances_sq.tolist()):
            yield Correspondence(s, t, d)

    def mean_error(self):
        return float(np.mean(self.distances_sq)) if len(self) else math.inf


@dataclass
class ICPState:
    """Progress of one `align` call; handed to the iteration callback."""
    transform: RigidTransform
    iteration: int = 0
    previous_error: float = math.inf
    mean_error: float = math.inf
    correspondence_count: int = 0
    status: ICPStatus = ICPStatus.INITIALIZED


@dataclass
class ICPResult:
    """
    Outcome of a registration.

    Attributes:
        transform: Accumulated transform mapping the source onto the target
        mean_error: Mean squared correspondence distance of the last iteration
        iterations: Number of iterations run
        converged: False when the iteration budget ran out first
        status: Terminal ICPStatus
        correspondence_count: Pairs used in the last iteration
        fitness: correspondence_count divided by the source size
        history: Mean squared error of every iteration
        transforms: Initial transform followed by the transform after every iteration
    """
    transform: RigidTransform
    mean_error: float
    iterations: int
    converged: bool
    status: ICPStatus
    correspondence_count: int = 0
    fitness: float = 0.0
    history: List[float] = field(default_factory=list)
    transforms: List[RigidTransform] = field(default_factory=list)

    @property
    def rmse(self):
        return math.sqrt(self.mean_error)


def build_index(target, config=None):
    """KD-tree over `target` with the tolerance and leaf size of `config`."""
    config = config or ICPConfig()
    return KDTree(as_points(target), leaf_size=config.leaf_size,
                  tolerance=config.duplicate_tolerance)


def find_correspondences(points, target_index, config=None):
    """
    Pair every point with its nearest target point and filter the pairs.

    Pairs farther apart than ``config.max_correspondence_distance`` are
    rejected first, then only the best ``config.trim_ratio`` fraction of the
    remaining ones is kept.

    Args:
        points: Source points already moved by the current transform, (n, d)
        target_index: KDTree over the target
        config: ICPConfig

    Returns:
        Correspondences, possibly empty
    """
    config = config or ICPConfig()
    indices, distances_sq = target_index.query(points, n_jobs=config.n_jobs)

    mask = reject_by_distance(distances_sq, config.max_correspondence_distance)
    mask = trim_by_ratio(distances_sq, config.trim_ratio, mask=mask)
    kept = np.flatnonzero(mask)
    target_indices = indices[kept]
    return Correspondences(
        source_indices=kept,
        target_indices=target_indices,
        distances_sq=distances_sq[kept],
        target_points=target_index.take(target_indices),
    )


def _has_converged(previous_error, mean_error, config):
    if abs(previous_error - mean_error) < config.convergence_threshold:
        return True
    # The error cannot drop below zero, so no further step can improve it
    # by the threshold
    if mean_error < config.convergence_threshold:
        return True
    return config.absolute_error_threshold is not None and mean_error <= config.absolute_error_threshold


def align(source, target_index, initial_transform=None, config=None, callback=None):
    """
    Align `source` to the target held by `target_index`.

    Each iteration moves the source by the current estimate, pairs every
    moved point with its nearest target point, drops rejected pairs,
    estimates the incremental rigid transform of the pairs and composes it
    onto the estimate. The call holds no state beyond its own arguments,
    so independent alignments can run in parallel threads.

    Args:
        source: Source points, PointCloud or (n, d) array
        target_index: KDTree over the target, or target points to index
        initial_transform: RigidTransform or homogeneous matrix; identity if None
        config: ICPConfig; defaults if None
        callback: Called with the ICPState after every iteration

    Returns:
        ICPResult

    Raises:
        EmptyIndex: the target holds no points
        NoCorrespondences: every pair of an iteration was rejected
        DegenerateCorrespondences: the kept pairs do not fix a transform
    """
    config = config or ICPConfig()
    if not isinstance(target_index, KDTree):
        target_index = build_index(target_index, config)
    if target_index.is_empty:
        raise EmptyIndex("cannot align against an empty target")

    source_points = as_points(source, dimension=target_index.dimension)
    dimension = source_points.shape[1]

    if initial_transform is None:
        transform = RigidTransform.identity(dimension)
    elif isinstance(initial_transform, RigidTransform):
        transform = initial_transform
    else:
        transform = RigidTransform.from_matrix(initial_transform)
    if transform.dimension != dimension:
        raise ValueError(f"initial_transform is {transform.dimension}D but the points are {dimension}D")

    weight_fn = get_loss_function(config.loss, config.loss_scale)
    state = ICPState(transform=transform, status=ICPStatus.ITERATING)
    history = []
    transforms = [transform]

    while True:
        state.iteration += 1
        moved = transform.apply(source_points)
        correspondences = find_correspondences(moved, target_index, config)
        if len(correspondences) == 0:
            state.status = ICPStatus.FAILED
            logger.warning("Iteration %d: all %d correspondences rejected",
                           state.iteration, source_points.shape[0])
            raise NoCorrespondences(
                f"No correspondences left at iteration {state.iteration}"
            )

        weights = weight_fn(correspondences.distances_sq) if weight_fn is not None else None
        try:
            increment = estimate_rigid_transform(
                moved[correspondences.source_indices], correspondences.target_points, weights
            )
        except DegenerateCorrespondences:
            state.status = ICPStatus.FAILED
            logger.warning("Iteration %d: degenerate correspondences (%d pairs)",
                           state.iteration, len(correspondences))
            raise

        transform = increment @ transform
        mean_error = correspondences.mean_error()
        history.append(mean_error)
        transforms.append(transform)

        state.transform = transform
        state.mean_error = mean_error
        state.correspondence_count = len(correspondences)
        logger.debug("Iteration %d: mean squared error %.6g over %d pairs",
                     state.iteration, mean_error, len(correspondences))

        if _has_converged(state.previous_error, mean_error, config):
            state.status = ICPStatus.CONVERGED
        elif state.iteration >= config.max_iterations:
            state.status = ICPStatus.MAX_ITERATIONS_REACHED

        if callback is not None:
            callback(state)
        if state.status is not ICPStatus.ITERATING:
            break
        state.previous_error = mean_error

    if state.status is ICPStatus.MAX_ITERATIONS_REACHED:
        logger.info("ICP stopped after %d iterations without converging (error %.6g)",
                    state.iteration, state.mean_error)
    else:
        logger.debug("ICP converged after %d iterations (error %.6g)",
                     state.iteration, state.mean_error)

    return ICPResult(
        transform=transform,
        mean_error=state.mean_error,
        iterations=state.iteration,
        converged=state.status is ICPStatus.CONVERGED,
        status=state.status,
        correspondence_count=state.correspondence_count,
        fitness=state.correspondence_count / source_points.shape[0],
        history=history,
        transforms=transforms,
    )


class ICPRegistration:
    """
    ICP registration of a source cloud onto a target cloud.

    The target KD-tree is built on first use and reused by every
    registration run on this object.
    """

    def __init__(self, source, target, config=None):
        """
        Initialize ICP registration.

        Args:
            source: PointCloud, (n, d) array or path to source point cloud file
            target: PointCloud, (n, d) array or path to target point cloud file
            config: ICPConfig; defaults if None
        """
        self.source = self._load(source)
        self.target = self._load(target)
        if self.source.dimension != self.target.dimension:
            raise ValueError(f"Source is {self.source.dimension}D but target is "
                             f"{self.target.dimension}D")
        self.config = config or ICPConfig()
        self.initial_transform = None
        self._index = None

    @staticmethod
    def _load(cloud):
        if isinstance(cloud, (str, os.PathLike)):
            return PointCloud.from_file(cloud)
        if isinstance(cloud, PointCloud):
            return cloud
        return PointCloud(cloud)

    @property
    def index(self):
        """KD-tree over the target points."""
        if self._index is None:
            tree_start = time.perf_counter()
            self._index = build_index(self.target, self.config)
            logger.info("KD-tree over %d target points built in %.3fs",
                        len(self._index), time.perf_counter() - tree_start)
        return self._index

    def register(self, initial_transform=None, voxel_size=None, callback=None):
        """
        Run ICP registration.

        Args:
            initial_transform: Starting estimate; falls back to
                               `self.initial_transform`, then identity
            voxel_size: Downsample the source with this voxel size first
            callback: Called with the ICPState after every iteration

        Returns:
            ICPResult
        """
        total_start = time.perf_counter()
        if initial_transform is None:
            initial_transform = self.initial_transform

        source = self.source.voxel_downsample(voxel_size) if voxel_size else self.source
        logger.info("Registering %d source points onto %d target points%s",
                    len(source), len(self.target),
                    f" (voxel size {voxel_size})" if voxel_size else "")

        result = align(source, self.index, initial_transform, self.config, callback)

        total_time = time.perf_counter() - total_start
        logger.info("Status: %s after %d iterations in %.3fs",
                    result.status.value, result.iterations, total_time)
        logger.info("Initial error: %.6g, final error: %.6g, fitness: %.3f",
                    result.history[0], result.history[-1], result.fitness)
        return result

    def register_coarse_to_fine(self, voxel_sizes, initial_transform=None, callback=None):
        """
        Run successive registrations from coarse to fine resolution.

        Each stage starts from the transform of the previous one; the last
        stage runs on the full-resolution source.

        Args:
            voxel_sizes: Voxel sizes of the downsampled stages, any order
            initial_transform: Starting estimate of the first stage
            callback: Called with the ICPState after every iteration

        Returns:
            ICPResult of the final stage, with `iterations`, `history` and
            `transforms` covering all stages
        """
        transform = initial_transform if initial_transform is not None else self.initial_transform
        history, transforms, iterations = [], [], 0
        result = None
        for voxel_size in sorted(voxel_sizes, reverse=True) + [None]:
            result = self.register(transform, voxel_size=voxel_size, callback=callback)
            transform = result.transform
            history.extend(result.history)
            transforms.extend(result.transforms if not transforms else result.transforms[1:])
            iterations += result.iterations
        return replace(result, iterations=iterations, history=history, transforms=transforms)

    def save_result(self, filepath, result):
        """Save registration results to file."""
        data = {
            'transformation': result.transform.as_matrix(),
            'mean_error': result.mean_error,
            'iterations': result.iterations,
            'converged': result.converged,
            'status': result.status.value,
            'history': list(result.history),
            'intermediate_transforms': [t.as_matrix() for t in result.transforms],
            'source_points': np.asarray(self.source.points),
            'target_points': np.asarray(self.target.points),
        }
        with open(filepath, 'wb') as f:
            pickle.dump(data, f)
        logger.info("Results saved to %s", filepath)

    @staticmethod
    def load_result(filepath):
        """Load previously saved registration results, None if the file is missing."""
        if not os.path.exists(filepath):
            logger.warning("File %s not found", filepath)
            return None

        with open(filepath, 'rb') as f:
            data = pickle.load(f)
        logger.info("Results loaded from %s", filepath)
        return data
