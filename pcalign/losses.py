"""Correspondence rejection and robust loss weights for ICP.

All functions take squared distances, the quantity the KD-tree reports.
"""

import numpy as np


def reject_by_distance(distances_sq, max_distance):
    """
    Keep correspondences no farther apart than `max_distance`.

    Args:
        distances_sq: Array of squared correspondence distances
        max_distance: Distance threshold, or None to keep everything

    Returns:
        Boolean mask of the kept correspondences
    """
    distances_sq = np.asarray(distances_sq, dtype=np.float64)
    if max_distance is None:
        return np.ones(distances_sq.shape[0], dtype=bool)
    return distances_sq <= max_distance * max_distance


def trim_by_ratio(distances_sq, ratio, mask=None):
    """
    Trimmed ICP selection: keep the best `ratio` fraction of correspondences.

    Only entries already selected by `mask` take part. The number kept is
    ``ceil(ratio * count)``; ties at the cut are broken by position so the
    selection is deterministic.

    Args:
        distances_sq: Array of squared correspondence distances
        ratio: Fraction in (0, 1], or None to keep everything
        mask: Optional boolean mask of candidates

    Returns:
        Boolean mask of the kept correspondences
    """
    distances_sq = np.asarray(distances_sq, dtype=np.float64)
    if mask is None:
        mask = np.ones(distances_sq.shape[0], dtype=bool)
    if ratio is None or ratio >= 1.0:
        return mask.copy()

    candidates = np.flatnonzero(mask)
    n_keep = int(np.ceil(ratio * candidates.shape[0]))
    order = np.argsort(distances_sq[candidates], kind='stable')
    trimmed = np.zeros_like(mask)
    trimmed[candidates[order[:n_keep]]] = True
    return trimmed


def huber_loss_weights(distances_sq, delta=1.0):
    """
    Compute Huber loss weights for robust estimation.

    Quadratic inside `delta`, linear outside: correspondences farther than
    `delta` get weight delta / distance.

    Args:
        distances_sq: Array of squared correspondence distances
        delta: Distance at which the penalty turns linear

    Returns:
        Array of weights in (0, 1]
    """
    distances = np.sqrt(np.asarray(distances_sq, dtype=np.float64))
    weights = np.ones_like(distances)
    outlier_mask = distances > delta
    weights[outlier_mask] = delta / distances[outlier_mask]
    return weights


def tukey_loss_weights(distances_sq, c=4.685):
    """
    Compute Tukey biweight loss weights for robust estimation.

    Correspondences farther than `c` get weight zero.

    Args:
        distances_sq: Array of squared correspondence distances
        c: Tuning constant (4.685 gives 95% efficiency for unit noise)

    Returns:
        Array of weights in [0, 1]
    """
    normalized = np.sqrt(np.asarray(distances_sq, dtype=np.float64)) / c
    weights = np.zeros_like(normalized)
    inlier_mask = normalized <= 1.0
    weights[inlier_mask] = (1 - normalized[inlier_mask]**2)**2
    return weights


LOSS_FUNCTIONS = {
    'none': (None, None),
    'huber': (huber_loss_weights, 1.0),
    'tukey': (tukey_loss_weights, 4.685),
}


def get_loss_function(loss_fn='none', scale=None):
    """
    Get a weighting function with its scale bound.

    Args:
        loss_fn: One of 'none', 'huber', 'tukey'
        scale: Loss scale (Huber delta or Tukey c), None for the default

    Returns:
        Callable mapping squared distances to weights, or None for 'none'
    """
    if loss_fn not in LOSS_FUNCTIONS:
        raise ValueError(f"Unknown loss function: {loss_fn}")
    func, default_scale = LOSS_FUNCTIONS[loss_fn]
    if func is None:
        return None
    scale = default_scale if scale is None else scale
    return lambda distances_sq: func(distances_sq, scale)
