"""Reading and writing point clouds.

``.npy`` and whitespace separated text files (``.txt``, ``.csv``, ``.xyz``)
are handled with numpy and may hold 2D or 3D points. Every other format
(``.ply``, ``.pcd``, ...) goes through Open3D, which is only imported
when such a file is used and always yields 3D points.
"""

import logging
import os

import numpy as np

from .point_cloud import PointCloud

logger = logging.getLogger(__name__)

TEXT_SUFFIXES = ('.txt', '.csv', '.xyz')


def _suffix(filepath):
    return os.path.splitext(os.fspath(filepath))[1].lower()


def read_point_cloud(filepath, dtype=None):
    """
    Load a point cloud from file.

    Args:
        filepath: Path of the file
        dtype: Optional float dtype of the returned cloud

    Returns:
        PointCloud
    """
    if not os.path.exists(filepath):
        raise FileNotFoundError(f"No such point cloud file: {filepath}")

    suffix = _suffix(filepath)
    if suffix == '.npy':
        points = np.load(filepath)
    elif suffix in TEXT_SUFFIXES:
        delimiter = ',' if suffix == '.csv' else None
        points = np.loadtxt(filepath, delimiter=delimiter, ndmin=2)
    else:
        import open3d as o3d
        pcd = o3d.io.read_point_cloud(os.fspath(filepath))
        points = np.asarray(pcd.points)
        if points.shape[0] == 0:
            logger.warning("Open3D read no points from %s", filepath)
            points = points.reshape(0, 3)

    cloud = PointCloud(points, dtype=dtype, dimension=3 if points.ndim == 1 else None)
    logger.debug("Read %d %dD points from %s", len(cloud), cloud.dimension, filepath)
    return cloud


def write_point_cloud(filepath, cloud):
    """
    Save a point cloud to file.

    2D clouds are written with z = 0 when the format needs Open3D.

    Args:
        filepath: Destination path; the suffix selects the format
        cloud: PointCloud or (n, d) array
    """
    if not isinstance(cloud, PointCloud):
        cloud = PointCloud(cloud)

    suffix = _suffix(filepath)
    if suffix == '.npy':
        np.save(filepath, np.asarray(cloud.points))
    elif suffix in TEXT_SUFFIXES:
        np.savetxt(filepath, cloud.points, delimiter=',' if suffix == '.csv' else ' ')
    else:
        import open3d as o3d
        if not o3d.io.write_point_cloud(os.fspath(filepath), to_o3d(cloud)):
            raise OSError(f"Open3D failed to write {filepath}")
    logger.debug("Wrote %d points to %s", len(cloud), filepath)


def to_o3d(cloud, color=None):
    """
    Convert to Open3D PointCloud object.

    Args:
        cloud: PointCloud or (n, d) array with d in (2, 3)
        color: Optional uniform color [r, g, b]

    Returns:
        Open3D PointCloud object
    """
    import open3d as o3d

    points = np.asarray(cloud.points if isinstance(cloud, PointCloud) else cloud, dtype=np.float64)
    if points.ndim != 2 or points.shape[1] not in (2, 3):
        raise ValueError(f"Open3D needs 2D or 3D points, got shape {points.shape}")
    if points.shape[1] == 2:
        points = np.hstack([points, np.zeros((points.shape[0], 1))])

    pcd = o3d.geometry.PointCloud()
    pcd.points = o3d.utility.Vector3dVector(points)
    if color is not None:
        pcd.paint_uniform_color(color)
    return pcd
