import heapq
import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np
from scipy.ndimage import maximum_filter
from tqdm import tqdm

from .data_structures import (TubeFields, PathArena, Traversal, TreeRegistry,
                              RidgeTraversalResult)
from .geometry import NEIGHBORHOOD_26, Position, near_boundary, normalize, sign, voxel
from .tube_direction import get_eigen_frame, get_tube_direction

logger = logging.getLogger(__name__)

DIRECTION_GATE = 0.1  # minimum cosine between a step and the current direction
LARGE_RADIUS = 1.5  # from this radius on, neighbours are scored by M alone
LARGE_POINT_RADIUS = 3.0
BOUNDARY_MARGIN = 3
SEED_MARGIN = 2
SEED_WINDOW = 4  # seed window covers offsets -2..+1 along each axis
LOOP_PENALTY = 5


@dataclass
class RidgeTraversalParameters:
    """Parameters for ridge traversal centerline extraction

    Parameters:
        t_high: float = 0.6
            Minimum TDF of a seed voxel.
            - Smaller values: More seeds, weaker tubes get traversed
            - Larger values: Only the most confident tubes start a traversal

        d_min: int = 5 (voxels)
            A traversal must be longer than this to be kept.
            - Smaller values: Keeps short fragments
            - Larger values: Drops short side branches

        m_low: float = 0.2
            Traversal stops at a voxel whose M = 1 - |F| is below this.
            - Smaller values: Walks further away from the tube center
            - Larger values: Stops as soon as the path leaves the center

        t_low: float = 0.4
            TDF below which a step counts as a low confidence step.

        max_below_t_low: int = 2
            Number of consecutive low confidence steps tolerated.
            - Smaller values: Stops at the first gap in the tube response
            - Larger values: Bridges longer gaps

        min_mean_tube: float = 0.6
            Minimum mean TDF along a traversal for it to be kept.

        tree_min: int = 10 (voxels)
            Trees longer than this are kept next to the longest tree.
            - Smaller values: Keeps more disconnected trees
            - Larger values: Output close to the single longest tree
    """
    t_high: float = 0.6
    d_min: int = 5
    m_low: float = 0.2
    t_low: float = 0.4
    max_below_t_low: int = 2
    min_mean_tube: float = 0.6
    tree_min: int = 10

    @classmethod
    def from_dict(cls, params_dict):
        """Create parameters from dictionary of overrides"""
        base_params = cls()
        for key, value in params_dict.items():
            if hasattr(base_params, key):
                setattr(base_params, key, value)
        return base_params


def find_seeds(tdf: np.ndarray, t_high: float) -> List[Tuple[float, int, Position]]:
    """Find traversal seeds: confident voxels that are maxima of their window

    A voxel is a seed if it lies at least SEED_MARGIN voxels inside the
    grid, its TDF is at least t_high, and no voxel in the 4x4x4 window of
    offsets -2..+1 has a greater TDF.

    Args:
        tdf: Tube detection confidence, indexed [z, y, x]
        t_high: Minimum seed confidence

    Returns:
        List of (tdf, linear index, (x, y, z)) tuples in linear index order
    """
    window_max = maximum_filter(tdf, size=SEED_WINDOW, mode='nearest')
    valid = (tdf >= t_high) & (tdf >= window_max)
    interior = np.zeros(tdf.shape, dtype=bool)
    interior[SEED_MARGIN:-SEED_MARGIN, SEED_MARGIN:-SEED_MARGIN, SEED_MARGIN:-SEED_MARGIN] = True
    valid &= interior

    zs, ys, xs = np.nonzero(valid)
    linear = np.ravel_multi_index((zs, ys, xs), tdf.shape)
    return [(float(tdf[z, y, x]), int(index), (int(x), int(y), int(z)))
            for z, y, x, index in zip(zs, ys, xs, linear)]


class RidgeTraversalExtractor:
    """Extract centerlines by walking along the ridge of the TDF

    Seeds are processed from the most confident down. From each seed the
    path is grown in both directions along the local tube direction; paths
    that are long and confident enough become trees, and a path that runs
    into existing trees joins them.
    """

    def __init__(self, parameters: Optional[RidgeTraversalParameters] = None):
        self.params = parameters or RidgeTraversalParameters()

    def extract(self, fields: TubeFields) -> RidgeTraversalResult:
        """Run ridge traversal over the fields

        Args:
            fields: Input vector field, TDF and radius

        Returns:
            RidgeTraversalResult with the binary centerline mask
        """
        seeds = find_seeds(fields.tdf, self.params.t_high)
        logger.info(f"Processing {len(seeds)} valid start points")

        # Max-heap on TDF, ties popped in linear index order
        queue = [(-value, index, position) for value, index, position in seeds]
        heapq.heapify(queue)

        registry = TreeRegistry(fields.shape)
        arena = PathArena()
        with tqdm(total=len(queue), desc="Ridge traversal", leave=False) as pbar:
            while queue:
                _, _, seed = heapq.heappop(queue)
                pbar.update(1)
                if registry.label_at(seed) > 0:
                    continue
                traversal = self.traverse(fields, seed, registry, arena)
                if self.is_acceptable(traversal):
                    tree_id = registry.accept(traversal)
                    logger.debug(f"Traversal from {seed} stored in tree {tree_id} "
                                 f"(distance {traversal.distance})")

        logger.info(f"Found {len(registry)} centerline trees")
        return self._finalize(fields, registry, arena)

    def is_acceptable(self, traversal: Traversal) -> bool:
        return (traversal.distance > self.params.d_min
                and traversal.mean_tube > self.params.min_mean_tube
                and traversal.connections < 2)

    def traverse(self, fields: TubeFields, seed: Position, registry: TreeRegistry,
                 arena: PathArena) -> Traversal:
        """Grow a path from seed in both tube directions

        Args:
            fields: Input fields
            seed: Start voxel
            registry: Accepted trees, read to detect connections
            arena: Receives every accepted point

        Returns:
            Traversal: Visited voxels, point handles, length and connections
        """
        params = self.params
        traversal = Traversal(seed)
        start = arena.add(seed, bool(voxel(fields.radius, seed) > LARGE_POINT_RADIUS))
        traversal.add(seed, start, voxel(fields.tdf, seed))
        seed_direction = get_tube_direction(fields, seed)

        for direction in (-1, 1):
            position = seed
            previous = start
            below_t_low = 0
            t_i = direction * seed_direction
            t_prev = t_i

            while not near_boundary(position, fields.size, BOUNDARY_MARGIN):
                winner = self._next_point(fields, position, t_i)
                if winner is None:
                    break

                tree_id = registry.label_at(winner)
                if tree_id > 0:
                    traversal.connect(tree_id, LOOP_PENALTY)
                    break

                m = float(voxel(fields.m, winner))
                tdf = float(voxel(fields.tdf, winner))
                if m < params.m_low or (below_t_low > params.max_below_t_low
                                        and tdf < params.t_low):
                    break
                if winner in traversal.visited:
                    break

                below_t_low = below_t_low + 1 if tdf < params.t_low else 0
                t_i, t_prev = self._update_direction(fields, winner, t_i, t_prev), t_i
                position = winner
                previous = arena.add(
                    winner, bool(voxel(fields.radius, winner) > LARGE_POINT_RADIUS), previous)
                traversal.add(winner, previous, tdf)

        return traversal

    def _next_point(self, fields: TubeFields, position: Position,
                    t_i: np.ndarray) -> Optional[Position]:
        """Best scoring neighbour roughly ahead of the current direction"""
        x, y, z = position
        best = None
        best_m = 0.0
        best_tdf = 0.0
        for (a, b, c), unit in NEIGHBORHOOD_26:
            px, py, pz = x + a, y + b, z + c
            tdf = float(fields.tdf[pz, py, px])
            if tdf == 0.0:
                continue
            if float(np.dot(unit, t_i)) <= DIRECTION_GATE:
                continue
            m = float(fields.m[pz, py, px])
            if fields.radius[pz, py, px] >= LARGE_RADIUS:
                better = m > best_m
            else:
                better = tdf * m > best_tdf * best_m
            if better:
                best = (px, py, pz)
                best_m = m
                best_tdf = tdf
        return best

    def _update_direction(self, fields: TubeFields, position: Position,
                          t_i: np.ndarray, t_prev: np.ndarray) -> np.ndarray:
        frame = get_eigen_frame(fields, position)
        e1 = frame.e1
        if np.all(frame.lambdas < 0):
            # No clear minor axis, follow the eigenvector closest to the path
            e1 = max((frame.e1, frame.e2, frame.e3),
                     key=lambda e: abs(float(np.dot(e, t_i))))
        return normalize(sign(float(np.dot(e1, t_i))) * e1 + t_i + t_prev)

    def _finalize(self, fields: TubeFields, registry: TreeRegistry,
                  arena: PathArena) -> RidgeTraversalResult:
        mask = np.zeros(fields.shape, dtype=np.uint8)
        primary = registry.primary_tree()
        if primary is None:
            logger.info("No centerline tree was accepted")
            return RidgeTraversalResult(mask, {}, None, [], [], registry.labels, arena)

        retained = registry.retained_trees(self.params.tree_min)
        kept = [primary] + [tree_id for tree_id in retained if tree_id != primary]
        mask[np.isin(registry.labels, kept)] = 1

        points = [arena[handle] for tree_id in kept for handle in registry.paths[tree_id]]
        logger.info(f"Longest tree {primary} has length {registry.lengths[primary]}, "
                    f"{len(retained)} trees longer than {self.params.tree_min}")
        return RidgeTraversalResult(mask, dict(registry.lengths), primary, retained,
                                    points, registry.labels, arena)
