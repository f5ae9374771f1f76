"""Rigid transforms and least-squares rigid alignment."""

import logging

import numpy as np

from .errors import DegenerateCorrespondences

logger = logging.getLogger(__name__)

# Singular values below this fraction of the largest one count as zero
RANK_TOLERANCE = 1e-9


class RigidTransform:
    """
    A proper rotation followed by a translation, in any dimension.

    Instances are immutable. ``b @ a`` is the transform that applies ``a``
    first and then ``b``, matching the product of their homogeneous matrices.
    """

    __slots__ = ('_rotation', '_translation')

    def __init__(self, rotation, translation):
        """
        Args:
            rotation: (d, d) rotation matrix
            translation: (d,) translation vector
        """
        rotation = np.array(rotation, dtype=np.float64)
        translation = np.array(translation, dtype=np.float64).reshape(-1)
        if rotation.ndim != 2 or rotation.shape[0] != rotation.shape[1]:
            raise ValueError(f"rotation must be a square matrix, got shape {rotation.shape}")
        if translation.shape[0] != rotation.shape[0]:
            raise ValueError(f"translation of length {translation.shape[0]} does not match "
                             f"a {rotation.shape[0]}D rotation")
        rotation.setflags(write=False)
        translation.setflags(write=False)
        self._rotation = rotation
        self._translation = translation

    @classmethod
    def identity(cls, dimension=3):
        return cls(np.eye(dimension), np.zeros(dimension))

    @classmethod
    def from_matrix(cls, matrix):
        """Build from a homogeneous (d+1, d+1) matrix."""
        matrix = np.asarray(matrix, dtype=np.float64)
        if matrix.ndim != 2 or matrix.shape[0] != matrix.shape[1] or matrix.shape[0] < 2:
            raise ValueError(f"Expected a square homogeneous matrix, got shape {matrix.shape}")
        d = matrix.shape[0] - 1
        return cls(matrix[:d, :d], matrix[:d, d])

    @property
    def rotation(self):
        return self._rotation

    @property
    def translation(self):
        return self._translation

    @property
    def dimension(self):
        return self._rotation.shape[0]

    def as_matrix(self):
        """Homogeneous (d+1, d+1) matrix."""
        d = self.dimension
        matrix = np.eye(d + 1)
        matrix[:d, :d] = self._rotation
        matrix[:d, d] = self._translation
        return matrix

    def apply(self, points):
        """
        Transform points.

        Args:
            points: (n, d) array or a single (d,) point

        Returns:
            Transformed points, same shape as the input, float64
        """
        points = np.asarray(points, dtype=np.float64)
        return points @ self._rotation.T + self._translation

    def compose(self, other):
        """Transform applying `other` first and then `self`."""
        if other.dimension != self.dimension:
            raise ValueError(f"Cannot compose {self.dimension}D and {other.dimension}D transforms")
        return RigidTransform(self._rotation @ other.rotation,
                              self._rotation @ other.translation + self._translation)

    def __matmul__(self, other):
        if not isinstance(other, RigidTransform):
            return NotImplemented
        return self.compose(other)

    def inverse(self):
        rotation_t = self._rotation.T
        return RigidTransform(rotation_t, -rotation_t @ self._translation)

    def is_close(self, other, atol=1e-6):
        return (self.dimension == other.dimension
                and np.allclose(self._rotation, other.rotation, atol=atol)
                and np.allclose(self._translation, other.translation, atol=atol))

    def __eq__(self, other):
        if not isinstance(other, RigidTransform):
            return NotImplemented
        return (np.array_equal(self._rotation, other.rotation)
                and np.array_equal(self._translation, other.translation))

    __hash__ = None

    def __repr__(self):
        return (f"RigidTransform(rotation={self._rotation.tolist()}, "
                f"translation={self._translation.tolist()})")


def rotation_2d(angle):
    """Counter-clockwise rotation by `angle` radians in the plane."""
    c, s = np.cos(angle), np.sin(angle)
    return np.array([[c, -s], [s, c]])


def rotation_3d(axis, angle):
    """Rotation by `angle` radians about `axis` (Rodrigues' formula)."""
    axis = np.asarray(axis, dtype=np.float64)
    norm = np.linalg.norm(axis)
    if norm == 0:
        raise ValueError("Rotation axis must be non-zero")
    x, y, z = axis / norm
    K = np.array([
        [0, -z, y],
        [z, 0, -x],
        [-y, x, 0]
    ])
    return np.eye(3) + np.sin(angle) * K + (1 - np.cos(angle)) * (K @ K)


def estimate_rigid_transform(source_points, target_points, weights=None):
    """
    Least-squares rigid transform mapping `source_points` onto `target_points`.

    Minimizes sum_i w_i * ||R s_i + t - t_i||^2 with the Kabsch algorithm.
    The reflection check runs on every call: when V U^T has a negative
    determinant the last singular direction is flipped.

    Args:
        source_points: (n, d) array
        target_points: (n, d) array, row i matched with source row i
        weights: Optional non-negative (n,) weights

    Returns:
        RigidTransform

    Raises:
        DegenerateCorrespondences: fewer than d pairs, zero total weight, or
            a cross-covariance of rank below d - 1
    """
    source_points = np.asarray(source_points, dtype=np.float64)
    target_points = np.asarray(target_points, dtype=np.float64)
    if source_points.ndim != 2 or source_points.shape != target_points.shape:
        raise ValueError(f"Expected two (n, d) arrays of equal shape, got "
                         f"{source_points.shape} and {target_points.shape}")

    n_pairs, dimension = source_points.shape
    if n_pairs < dimension:
        raise DegenerateCorrespondences(
            f"{n_pairs} pairs cannot determine a {dimension}D rigid transform"
        )

    if weights is None:
        weights = np.ones(n_pairs)
    else:
        weights = np.asarray(weights, dtype=np.float64).reshape(-1)
        if weights.shape[0] != n_pairs or np.any(weights < 0):
            raise ValueError("weights must be a non-negative array with one entry per pair")
    total = np.sum(weights)
    if not total > 0:
        raise DegenerateCorrespondences("Correspondence weights sum to zero")

    # Normalize weights
    weights = weights / total

    # Compute weighted centroids
    source_centroid = weights @ source_points
    target_centroid = weights @ target_points

    # Center the points
    source_centered = source_points - source_centroid
    target_centered = target_points - target_centroid

    # Weighted cross-covariance matrix
    H = (source_centered * weights[:, np.newaxis]).T @ target_centered
    try:
        U, S, Vt = np.linalg.svd(H)
    except np.linalg.LinAlgError as e:
        raise DegenerateCorrespondences(f"SVD of the cross-covariance failed: {e}") from e

    # A unique rotation needs at least d - 1 independent directions
    rank = int(np.sum(S > RANK_TOLERANCE * S[0])) if S[0] > 0 else 0
    if rank < dimension - 1:
        raise DegenerateCorrespondences(
            f"Cross-covariance has rank {rank}, a {dimension}D rotation needs at least {dimension - 1}"
        )

    R = Vt.T @ U.T

    # Handle reflection case
    if np.linalg.det(R) < 0:
        Vt[-1, :] *= -1
        R = Vt.T @ U.T

    t = target_centroid - R @ source_centroid
    return RigidTransform(R, t)
