"""Point cloud data management and preprocessing."""

import numpy as np

SUPPORTED_DTYPES = (np.float32, np.float64)


def as_points(data, dtype=None, dimension=None):
    """
    Coerce point data into a 2D floating point array.

    Args:
        data: PointCloud, numpy array or nested sequence of shape (n, d)
        dtype: Optional float dtype (float32 or float64). Defaults to the
               input's float dtype, or float64 for anything else.
        dimension: Expected number of coordinates per point, if known

    Returns:
        Numpy array of shape (n, d)
    """
    if isinstance(data, PointCloud):
        points = data.points
    else:
        points = np.asarray(data)

    if dtype is None:
        dtype = points.dtype if points.dtype in SUPPORTED_DTYPES else np.float64
    elif np.dtype(dtype) not in SUPPORTED_DTYPES:
        raise ValueError(f"Unsupported dtype: {dtype}")

    # An empty list carries no dimension of its own
    if points.size == 0 and points.ndim == 1:
        if dimension is None:
            raise ValueError("Cannot infer the dimension of an empty point set")
        points = points.reshape(0, dimension)

    if points.ndim != 2 or points.shape[1] < 1:
        raise ValueError(f"Expected points of shape (n, d), got {points.shape}")
    if dimension is not None and points.shape[1] != dimension:
        raise ValueError(f"Expected {dimension}D points, got {points.shape[1]}D")
    points = points.astype(dtype, copy=False)
    if not np.all(np.isfinite(points)):
        raise ValueError("Point coordinates must be finite")
    return points


class PointCloud:
    """
    An ordered, read-only set of points of a fixed dimension.

    The coordinates are copied on construction and the copy is marked
    read-only, so a cloud can be shared between threads and alignments.
    """

    def __init__(self, points, dtype=None, dimension=None):
        """
        Args:
            points: Array-like of shape (n, d)
            dtype: Optional float dtype (float32 or float64)
            dimension: Optional dimension, required for empty inputs
        """
        pts = np.array(as_points(points, dtype=dtype, dimension=dimension), copy=True)
        pts.setflags(write=False)
        self._points = pts

    @classmethod
    def from_file(cls, filepath, dtype=None):
        """Load point cloud from file (see `pcalign.io.read_point_cloud`)."""
        from .io import read_point_cloud
        return read_point_cloud(filepath, dtype=dtype)

    @property
    def points(self):
        return self._points

    @property
    def dimension(self):
        return self._points.shape[1]

    @property
    def dtype(self):
        return self._points.dtype

    def centroid(self):
        """Mean of all points. Raises ValueError on an empty cloud."""
        if len(self) == 0:
            raise ValueError("The centroid of an empty point cloud is undefined")
        return self._points.mean(axis=0)

    def transformed(self, transformation):
        """
        Apply a rigid transform and return the result as a new cloud.

        Args:
            transformation: RigidTransform or homogeneous (d+1, d+1) matrix

        Returns:
            New PointCloud with the same dtype
        """
        from .transforms import RigidTransform
        if not isinstance(transformation, RigidTransform):
            transformation = RigidTransform.from_matrix(transformation)
        return PointCloud(transformation.apply(self._points), dtype=self.dtype)

    def voxel_downsample(self, voxel_size):
        """
        Downsample point cloud using voxel grid.

        Every occupied voxel is replaced by the centroid of its points. The
        grid is anchored at the origin and voxels are emitted in the order
        their first point appears in the cloud.

        Args:
            voxel_size: Edge length of the voxels

        Returns:
            Downsampled PointCloud
        """
        if voxel_size <= 0:
            raise ValueError(f"voxel_size must be positive, got {voxel_size}")
        if len(self) == 0:
            return self

        voxel_indices = np.floor(self._points / voxel_size).astype(np.int64)
        _, first, inverse = np.unique(voxel_indices, axis=0,
                                      return_index=True, return_inverse=True)
        inverse = inverse.reshape(-1)

        sums = np.zeros((first.shape[0], self.dimension), dtype=np.float64)
        np.add.at(sums, inverse, self._points)
        counts = np.bincount(inverse, minlength=first.shape[0])
        centroids = sums / counts[:, np.newaxis]

        order = np.argsort(first, kind='stable')
        return PointCloud(centroids[order], dtype=self.dtype)

    def to_o3d(self, color=None):
        """Convert to an Open3D PointCloud (see `pcalign.io.to_o3d`)."""
        from .io import to_o3d
        return to_o3d(self, color=color)

    def __len__(self):
        return self._points.shape[0]

    def __getitem__(self, index):
        return self._points[index]

    def __iter__(self):
        return iter(self._points)

    def __repr__(self):
        return f"PointCloud(n={len(self)}, dimension={self.dimension}, dtype={self.dtype})"
