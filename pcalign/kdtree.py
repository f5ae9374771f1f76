"""KD-Tree implementation for efficient spatial partitioning and nearest neighbor search.

Nodes live in an arena of parallel lists addressed by integer node ids. An
internal node holds one point (the median of its subset along the node's
axis) and two child ids; a leaf holds a bucket of point slots that is
scanned with numpy. Splitting axes cycle over the dimensions
(``axis = depth % dimension``) regardless of the data.

Every point in the left subtree of a node satisfies ``p[axis] <= split``,
every point in the right subtree ``p[axis] >= split``. No two stored points
are closer than ``tolerance`` to each other.
"""

import heapq
import logging
import math
from collections import namedtuple

import numpy as np
from joblib import Parallel, delayed, effective_n_jobs

from .errors import EmptyIndex
from .point_cloud import as_points
from .utils import squared_distances, time_function

logger = logging.getLogger(__name__)

_NO_NODE = -1


class Neighbor(namedtuple('Neighbor', ['index', 'point', 'distance_sq'])):
    """A query result: point id, its coordinates and squared distance to the query."""
    __slots__ = ()

    @property
    def distance(self):
        return math.sqrt(self.distance_sq)


def unique_within(points, tolerance):
    """
    Indices of the points that survive duplicate removal, in input order.

    A point is dropped when an earlier surviving point lies within
    `tolerance` of it, which is what inserting the points one by one
    would do. Candidates are found by sweeping along the axis of largest
    extent, so only points whose coordinates on that axis are chained by
    gaps of at most `tolerance` are compared pairwise.
    """
    n_points = points.shape[0]
    keep = np.ones(n_points, dtype=bool)
    if n_points <= 1:
        return np.flatnonzero(keep)

    sweep_axis = int(np.argmax(np.ptp(points, axis=0)))
    order = np.argsort(points[:, sweep_axis], kind='stable')
    gaps = np.diff(points[order, sweep_axis]) > tolerance
    starts = np.concatenate(([0], np.flatnonzero(gaps) + 1))
    ends = np.concatenate((starts[1:], [n_points]))
    limit = tolerance * tolerance

    for start, end in zip(starts, ends):
        if end - start < 2:
            continue
        kept = []
        for i in np.sort(order[start:end]):
            if kept and squared_distances(points[kept], points[i]).min() <= limit:
                keep[i] = False
                continue
            kept.append(i)
    return np.flatnonzero(keep)


class KDTree:
    """
    Balanced KD-tree over a fixed-dimension point set.

    Points are identified by their index in the array passed to `build`;
    points added later with `insert` receive the following ids. Queries
    report ids, so callers can map results back to their own arrays.
    """

    def __init__(self, points=None, dimension=None, leaf_size=16, tolerance=1e-9, dtype=None):
        """
        Args:
            points: Optional point set of shape (n, d) to build from
            dimension: Dimension of the points; inferred from `points` when given
            leaf_size: Maximum number of points held by a leaf bucket
            tolerance: Two points closer than this are considered duplicates
            dtype: Storage precision (float32 or float64), inferred by default
        """
        if int(leaf_size) < 1:
            raise ValueError(f"leaf_size must be at least 1, got {leaf_size}")
        if tolerance < 0:
            raise ValueError(f"tolerance must be non-negative, got {tolerance}")
        self.leaf_size = int(leaf_size)
        self.tolerance = float(tolerance)
        self._dimension = dimension
        self._dtype = np.dtype(dtype) if dtype is not None else None
        self._reset(np.empty((0, dimension or 0), dtype=self._dtype or np.float64), 0)
        if points is not None:
            self.build(points)

    def _reset(self, data, next_id):
        self._data = data
        self._ids = np.arange(data.shape[0], dtype=np.int64)
        self._size = data.shape[0]
        self._next_id = next_id
        self._root = _NO_NODE
        self._node_split = []
        self._node_axis = []
        self._node_value = []
        self._node_left = []
        self._node_right = []
        self._node_bucket = []

    @time_function
    def build(self, points):
        """
        Replace the tree content with a balanced tree over `points`.

        Args:
            points: Array-like of shape (n, d); may be empty

        Returns:
            self
        """
        pts = as_points(points, dtype=self._dtype, dimension=self._dimension)
        self._dimension = pts.shape[1]
        self._dtype = pts.dtype

        keep = unique_within(pts, self.tolerance)
        if keep.shape[0] < pts.shape[0]:
            logger.debug("Dropped %d duplicate points while building", pts.shape[0] - keep.shape[0])

        self._reset(np.array(pts[keep], copy=True), pts.shape[0])
        self._ids = keep.astype(np.int64)
        if self._size:
            self._root = self._build_subtree(np.arange(self._size, dtype=np.int64), 0)
        logger.debug("Built KD-tree with %d points, depth %d", self._size, self.depth)
        return self

    def _new_node(self):
        self._node_split.append(_NO_NODE)
        self._node_axis.append(_NO_NODE)
        self._node_value.append(0.0)
        self._node_left.append(_NO_NODE)
        self._node_right.append(_NO_NODE)
        self._node_bucket.append(None)
        return len(self._node_split) - 1

    def _build_subtree(self, slots, depth, node=None):
        if node is None:
            node = self._new_node()

        # Leaf: store the slots to avoid creating a node per point
        if slots.shape[0] <= self.leaf_size:
            self._node_bucket[node] = slots
            return node

        axis = depth % self._dimension
        median = slots.shape[0] // 2
        # argpartition places the median in its sorted position, smaller
        # coordinates before it and larger ones after it
        order = np.argpartition(self._data[slots, axis], median)
        slots = slots[order]
        split_slot = int(slots[median])

        self._node_bucket[node] = None
        self._node_split[node] = split_slot
        self._node_axis[node] = axis
        self._node_value[node] = float(self._data[split_slot, axis])
        left = self._build_subtree(slots[:median], depth + 1)
        right = self._build_subtree(slots[median + 1:], depth + 1)
        self._node_left[node] = left
        self._node_right[node] = right
        return node

    def insert(self, point):
        """
        Add a single point without rebalancing.

        The tree is not rebalanced, so long runs of insertions in an
        adversarial order can make queries degrade toward linear time.

        Args:
            point: Coordinates of shape (d,)

        Returns:
            True if the point was inserted, False if it was within
            `tolerance` of a stored point and therefore ignored.
        """
        if self._dimension is None:
            self._dimension = np.asarray(point).size
            self._data = self._data.reshape(0, self._dimension)
        query = self._check_point(point)
        if self._dtype is not None:
            # Compare what will actually be stored
            query = query.astype(self._dtype).astype(np.float64)

        if self._size:
            _, dist_sq = self._nearest_slot(query)
            if dist_sq <= self.tolerance * self.tolerance:
                logger.debug("Ignored duplicate point %s", query)
                return False

        slot = self._append(query)
        if self._root == _NO_NODE:
            self._root = self._build_subtree(np.array([slot], dtype=np.int64), 0)
            return True

        # Descend to the leaf whose cell contains the point, ties go right
        node, depth = self._root, 0
        while self._node_bucket[node] is None:
            if query[self._node_axis[node]] < self._node_value[node]:
                node = self._node_left[node]
            else:
                node = self._node_right[node]
            depth += 1

        bucket = np.append(self._node_bucket[node], slot)
        self._build_subtree(bucket, depth, node=node)
        return True

    def _append(self, point):
        if self._size == self._data.shape[0]:
            capacity = max(8, 2 * self._data.shape[0])
            data = np.empty((capacity, self._dimension), dtype=self._dtype or np.float64)
            data[:self._size] = self._data[:self._size]
            ids = np.empty(capacity, dtype=np.int64)
            ids[:self._size] = self._ids[:self._size]
            self._data, self._ids = data, ids
            if self._dtype is None:
                self._dtype = data.dtype
        slot = self._size
        self._data[slot] = point
        self._ids[slot] = self._next_id
        self._next_id += 1
        self._size += 1
        return slot

    def _check_point(self, point):
        query = np.asarray(point, dtype=np.float64)
        if query.size != self._dimension:
            raise ValueError(f"Expected a {self._dimension}D point, got shape {query.shape}")
        query = query.reshape(self._dimension)
        if not np.all(np.isfinite(query)):
            raise ValueError("Query point must be finite")
        return query

    def _nearest_slot(self, query):
        """Slot and squared distance of the closest point, lowest slot on ties."""
        best_slot, best = _NO_NODE, math.inf
        stack = [(self._root, 0.0)]

        while stack:
            node, bound = stack.pop()
            # The whole subtree lies at least `bound` away
            if bound > best:
                continue

            bucket = self._node_bucket[node]
            if bucket is not None:
                if bucket.shape[0] == 0:
                    continue
                dists = squared_distances(self._data[bucket], query)
                nearest = float(dists.min())
                slot = int(bucket[dists == nearest].min())
                if nearest < best or (nearest == best and slot < best_slot):
                    best_slot, best = slot, nearest
                continue

            slot = self._node_split[node]
            diff = self._data[slot] - query
            dist = float(diff @ diff)
            if dist < best or (dist == best and slot < best_slot):
                best_slot, best = slot, dist

            offset = query[self._node_axis[node]] - self._node_value[node]
            if offset < 0:
                near, far = self._node_left[node], self._node_right[node]
            else:
                near, far = self._node_right[node], self._node_left[node]
            stack.append((far, offset * offset))
            stack.append((near, bound))

        return best_slot, best

    def nearest(self, query_point):
        """
        Find the stored point closest to `query_point`.

        Args:
            query_point: Coordinates of shape (d,)

        Returns:
            Neighbor(index, point, distance_sq)

        Raises:
            EmptyIndex: if the tree holds no points
        """
        if self._size == 0:
            raise EmptyIndex("nearest neighbor query on an empty KD-tree")
        slot, dist_sq = self._nearest_slot(self._check_point(query_point))
        return Neighbor(int(self._ids[slot]), self._data[slot].copy(), dist_sq)

    def k_nearest(self, query_point, k):
        """
        Find up to `k` stored points closest to `query_point`.

        A bounded max-heap keeps the k best candidates; a subtree is skipped
        once the heap is full and the subtree's distance bound exceeds the
        worst candidate.

        Args:
            query_point: Coordinates of shape (d,)
            k: Number of neighbors, at least 1

        Returns:
            List of Neighbor ordered by increasing distance (then id)
        """
        if int(k) < 1:
            raise ValueError(f"k must be at least 1, got {k}")
        if self._size == 0:
            raise EmptyIndex("k-nearest query on an empty KD-tree")
        k = int(k)
        query = self._check_point(query_point)

        # Entries are (-distance_sq, -slot): the heap top is the worst candidate
        heap = []

        def consider(dist, slot):
            if len(heap) < k:
                heapq.heappush(heap, (-dist, -slot))
            elif (dist, slot) < (-heap[0][0], -heap[0][1]):
                heapq.heapreplace(heap, (-dist, -slot))

        stack = [(self._root, 0.0)]
        while stack:
            node, bound = stack.pop()
            if len(heap) == k and bound > -heap[0][0]:
                continue

            bucket = self._node_bucket[node]
            if bucket is not None:
                if bucket.shape[0]:
                    dists = squared_distances(self._data[bucket], query)
                    for dist, slot in zip(dists.tolist(), bucket.tolist()):
                        consider(dist, slot)
                continue

            slot = self._node_split[node]
            diff = self._data[slot] - query
            consider(float(diff @ diff), slot)

            offset = query[self._node_axis[node]] - self._node_value[node]
            if offset < 0:
                near, far = self._node_left[node], self._node_right[node]
            else:
                near, far = self._node_right[node], self._node_left[node]
            stack.append((far, offset * offset))
            stack.append((near, bound))

        found = sorted((-neg_dist, -neg_slot) for neg_dist, neg_slot in heap)
        return [Neighbor(int(self._ids[slot]), self._data[slot].copy(), dist)
                for dist, slot in found]

    def _query_chunk(self, queries):
        slots = np.empty(queries.shape[0], dtype=np.int64)
        dists = np.empty(queries.shape[0], dtype=np.float64)
        for i, query in enumerate(queries):
            slots[i], dists[i] = self._nearest_slot(query)
        return slots, dists

    def query(self, points, n_jobs=1):
        """
        Nearest neighbor of every row of `points`.

        Args:
            points: Query points of shape (m, d)
            n_jobs: Number of joblib worker threads; 1 runs serially. The
                    tree is only read here, so results do not depend on it.

        Returns:
            Tuple of (indices, distances_sq) arrays of length m
        """
        if self._size == 0:
            raise EmptyIndex("nearest neighbor query on an empty KD-tree")
        queries = as_points(points, dtype=np.float64, dimension=self._dimension)
        if queries.shape[0] == 0:
            return np.empty(0, dtype=np.int64), np.empty(0, dtype=np.float64)

        if n_jobs == 1 or queries.shape[0] < 2:
            slots, dists = self._query_chunk(queries)
        else:
            n_chunks = min(effective_n_jobs(n_jobs), queries.shape[0])
            chunks = np.array_split(queries, n_chunks)
            results = Parallel(n_jobs=n_jobs, prefer='threads')(
                delayed(self._query_chunk)(chunk) for chunk in chunks
            )
            slots = np.concatenate([r[0] for r in results])
            dists = np.concatenate([r[1] for r in results])
        return self._ids[slots], dists

    def take(self, indices):
        """
        Coordinates of the stored points with the given ids.

        Args:
            indices: Array-like of point ids as reported by the queries

        Returns:
            Array of shape (len(indices), d)
        """
        indices = np.asarray(indices, dtype=np.int64).reshape(-1)
        # Slots are handed out in id order, so the ids are sorted
        ids = self._ids[:self._size]
        slots = np.searchsorted(ids, indices)
        valid = slots < self._size
        if not np.all(valid) or not np.array_equal(ids[slots], indices):
            raise KeyError("Unknown point id")
        return self._data[slots]

    @property
    def dimension(self):
        return self._dimension

    @property
    def dtype(self):
        return self._dtype

    @property
    def points(self):
        """Stored points in id order (read-only copy)."""
        points = self._data[:self._size].copy()
        points.setflags(write=False)
        return points

    @property
    def ids(self):
        return self._ids[:self._size].copy()

    @property
    def is_empty(self):
        return self._size == 0

    @property
    def depth(self):
        """Number of levels on the longest root-to-leaf path holding points."""
        if self._root == _NO_NODE:
            return 0
        deepest = 0
        stack = [(self._root, 1)]
        while stack:
            node, level = stack.pop()
            bucket = self._node_bucket[node]
            if bucket is not None:
                if bucket.shape[0]:
                    deepest = max(deepest, level)
                continue
            deepest = max(deepest, level)
            stack.append((self._node_left[node], level + 1))
            stack.append((self._node_right[node], level + 1))
        return deepest

    def __len__(self):
        return self._size

    def __iter__(self):
        return iter(self.points)

    def __contains__(self, point):
        if self._size == 0:
            return False
        _, dist_sq = self._nearest_slot(self._check_point(point))
        return dist_sq <= self.tolerance * self.tolerance

    def __repr__(self):
        return (f"KDTree(n={self._size}, dimension={self._dimension}, "
                f"leaf_size={self.leaf_size}, tolerance={self.tolerance})")
