"""
pcalign - Point cloud registration with a KD-tree backed Iterative Closest Point

A rigid registration core for scan matching:
- KD-Tree with nearest, k-nearest and batch queries and duplicate-free insertion
- Kabsch/SVD least-squares rigid alignment in 2D and 3D
- ICP with distance rejection, trimming and robust weights
- Coarse-to-fine registration on voxel-downsampled clouds
"""

import logging

from .errors import (DegenerateCorrespondences, EmptyIndex, InvalidConfiguration,
                     NoCorrespondences, NotFound, PCAlignError)
from .icp import (Correspondence, Correspondences, ICPConfig, ICPRegistration, ICPResult,
                  ICPState, ICPStatus, align, build_index, find_correspondences)
from .kdtree import KDTree, Neighbor
from .point_cloud import PointCloud
from .transforms import RigidTransform, estimate_rigid_transform, rotation_2d, rotation_3d

__version__ = "1.0.0"
__all__ = ["align", "build_index", "find_correspondences", "estimate_rigid_transform",
           "rotation_2d", "rotation_3d", "get_logger", "set_logger_level",
           "Correspondence", "Correspondences", "ICPConfig", "ICPRegistration", "ICPResult",
           "ICPState", "ICPStatus", "KDTree", "Neighbor", "PointCloud", "RigidTransform",
           "PCAlignError", "EmptyIndex", "NotFound", "DegenerateCorrespondences",
           "NoCorrespondences", "InvalidConfiguration"]

logger = logging.getLogger(__name__)


def get_logger():
    """Returns the package-wide logger."""
    return logger


def set_logger_level(level):
    """
    Sets the package-wide logger level.

    Args:
        level: A logging level such as logging.DEBUG
    """
    logger.setLevel(level)
