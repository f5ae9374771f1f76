"""General utility functions."""

import logging
import threading
import time
from functools import wraps

import numpy as np

from .errors import EmptyIndex

logger = logging.getLogger(__name__)


def time_function(func):
    """
    Decorator to time function execution.
    For recursive functions, only times the top-level call of each thread.
    The elapsed time is logged at DEBUG level.
    """
    state = threading.local()

    @wraps(func)
    def wrapper(*args, **kwargs):
        if not getattr(state, 'in_call', False):
            state.in_call = True
            start_time = time.perf_counter()
            try:
                result = func(*args, **kwargs)
                elapsed = time.perf_counter() - start_time
                logger.debug("%s took %.6f seconds", func.__qualname__, elapsed)
                return result
            finally:
                state.in_call = False
        else:
            return func(*args, **kwargs)

    return wrapper


def squared_distances(points, query_point):
    """Squared Euclidean distances from every row of `points` to `query_point`."""
    diff = points - query_point
    return np.einsum('ij,ij->i', diff, diff)


def nearest_neighbor_naive(query_point, points):
    """
    Brute-force nearest neighbor search.

    Reference results the KD-tree queries are checked against.

    Args:
        query_point: Point to find the nearest neighbor for, shape (d,)
        points: Numpy array of points, shape (n, d)

    Returns:
        Tuple of (index, squared_distance). Ties resolve to the lowest index.
    """
    points = np.asarray(points, dtype=np.float64)
    if points.shape[0] == 0:
        raise EmptyIndex("cannot search an empty point set")
    dists = squared_distances(points, np.asarray(query_point, dtype=np.float64))
    idx = int(np.argmin(dists))
    return idx, float(dists[idx])
