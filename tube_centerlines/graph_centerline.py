import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import List, Dict, Tuple, Optional

import networkx as nx
import numpy as np
from scipy.spatial import KDTree
from tqdm import tqdm

from .data_structures import TubeFields, GraphCenterlineResult
from .geometry import Position, round_half_away, voxel
from .tube_direction import STENCIL_MARGIN, get_tube_direction

logger = logging.getLogger(__name__)

# Radial projections shorter than this leave the angle to the tube axis undefined
PROJECTION_EPS = 1e-6


@dataclass
class GraphCenterlineParameters:
    """Parameters for graph based centerline extraction

    Parameters:
        tdf_limit: float = 0.5
            Voxels with a TDF above this are centerpoint candidates.
            - Smaller values: More candidates, noisier graph
            - Larger values: Fewer candidates, thin tubes may break up

        theta_limit: float = 0.5 (radians)
            A candidate is dropped if a neighbour lying within this angle
            of the tube cross-section has a smaller field magnitude.

        min_window: int = 3 (voxels)
            Smallest half-width of the suppression window; the window grows
            with the local radius.

        max_distance: float = 40.0 (voxels)
            Search radius when linking centerpoints.
            - Smaller values: Only close centerpoints get linked
            - Larger values: Bridges larger gaps, more candidate pairs

        min_pair_angle: float = 2.09 (radians)
            Minimum angle between the two links chosen at a centerpoint,
            so both links point to opposite sides.

        min_average_tdf: float = 0.5
            Minimum mean TDF sampled along a link.

        samples: int = 40
            Number of points sampled along a link.

        min_tree_length: int = 20 (vertices)
            Components with more vertices than this are reported as valid.
    """
    tdf_limit: float = 0.5
    theta_limit: float = 0.5
    min_window: int = 3
    max_distance: float = 40.0
    min_pair_angle: float = 2.09
    min_average_tdf: float = 0.5
    samples: int = 40
    min_tree_length: int = 20

    @classmethod
    def from_dict(cls, params_dict):
        """Create parameters from dictionary of overrides"""
        base_params = cls()
        for key, value in params_dict.items():
            if hasattr(base_params, key):
                setattr(base_params, key, value)
        return base_params


@lru_cache(maxsize=None)
def _window_offsets(half_width: int) -> np.ndarray:
    """(x, y, z) offsets of a cube of the given half-width, center excluded"""
    steps = np.arange(-half_width, half_width + 1)
    a, b, c = np.meshgrid(steps, steps, steps, indexing='ij')
    offsets = np.stack([a.ravel(), b.ravel(), c.ravel()], axis=1)
    return offsets[np.any(offsets != 0, axis=1)]


def sample_segment(start, end, samples: int) -> np.ndarray:
    """Voxels (x, y, z) at start + i/samples * (end - start) for i < samples"""
    start = np.asarray(start, dtype=np.float64)
    end = np.asarray(end, dtype=np.float64)
    alphas = np.arange(samples, dtype=np.float64) / samples
    return round_half_away(start[None, :] + alphas[:, None] * (end - start)[None, :])


def mean_along_segment(volume: np.ndarray, start, end, samples: int) -> float:
    points = sample_segment(start, end, samples)
    return float(volume[points[:, 2], points[:, 1], points[:, 0]].sum()) / samples


class GraphCenterlineExtractor:
    """Extract centerlines by linking locally central points into a graph

    Candidates are visited from the most confident down and kept when no
    neighbour in their cross-section lies closer to the tube center. Every
    kept point is then linked to the closest pair of points on opposite
    sides along the tube, and the largest connected component is drawn.
    """

    def __init__(self, parameters: Optional[GraphCenterlineParameters] = None):
        self.params = parameters or GraphCenterlineParameters()

    def extract(self, fields: TubeFields) -> GraphCenterlineResult:
        """Run graph centerline extraction over the fields

        Args:
            fields: Input vector field, TDF and radius

        Returns:
            GraphCenterlineResult with the int8 centerline volume
        """
        centerpoints = self.select_centerpoints(fields)
        logger.info(f"Selected {len(centerpoints)} centerpoints")

        graph, pairs = self.build_graph(fields, centerpoints)
        logger.info(f"Built graph with {graph.number_of_nodes()} nodes and "
                    f"{graph.number_of_edges()} edges")

        components = [sorted(component) for component in nx.connected_components(graph)]
        mask = np.zeros(fields.shape, dtype=np.int8)
        if not components:
            logger.info("No centerpoints found, centerline volume is empty")
            return GraphCenterlineResult(mask, graph, centerpoints, [], None, [], pairs)

        largest = 0
        for i, component in enumerate(components):
            if len(component) > len(components[largest]):
                largest = i
        valid = [i for i, component in enumerate(components)
                 if len(component) > self.params.min_tree_length]
        logger.info(f"Largest connected component has {len(components[largest])} vertices "
                    f"({len(valid)} of {len(components)} components above "
                    f"{self.params.min_tree_length})")

        self._rasterize(graph, components[largest], mask)
        return GraphCenterlineResult(mask, graph, centerpoints, components, largest, valid, pairs)

    def select_centerpoints(self, fields: TubeFields) -> List[Position]:
        """Pick voxels that are locally the most central along the tube

        Returns:
            List of (x, y, z) centerpoints in scan order
        """
        tdf = fields.tdf
        candidates = np.zeros(tdf.shape, dtype=bool)
        inner = slice(STENCIL_MARGIN, -STENCIL_MARGIN)
        candidates[inner, inner, inner] = tdf[inner, inner, inner] > self.params.tdf_limit
        zs, ys, xs = np.nonzero(candidates)
        # Most confident first, equal values keep scan order
        order = np.argsort(-tdf[zs, ys, xs], kind='stable')

        accepted = np.zeros(tdf.shape, dtype=bool)
        for idx in tqdm(order, desc="Selecting centerpoints", leave=False):
            pos = (int(xs[idx]), int(ys[idx]), int(zs[idx]))
            removals = self._suppressed_by(fields, pos, accepted)
            if removals is None:
                continue
            accepted[removals[:, 2], removals[:, 1], removals[:, 0]] = False
            accepted[pos[2], pos[1], pos[0]] = True

        return [(int(x), int(y), int(z)) for z, y, x in np.argwhere(accepted)]

    def _suppressed_by(self, fields: TubeFields, pos: Position,
                       accepted: np.ndarray) -> Optional[np.ndarray]:
        """Check a candidate against its window

        Returns:
            None if the candidate is rejected, otherwise the (x, y, z) array
            of previously accepted centerpoints it replaces
        """
        params = self.params
        e1 = get_tube_direction(fields, pos)
        radius_x = float(voxel(fields.radius, pos))
        magnitude_x = float(voxel(fields.magnitude, pos))
        max_d = int(round_half_away(max(radius_x, params.min_window)))

        offsets = _window_offsets(max_d)
        points = np.asarray(pos) + offsets
        inside = np.all((points > 0) & (points < np.asarray(fields.size)), axis=1)
        offsets = offsets[inside]
        points = points[inside]
        px, py, pz = points[:, 0], points[:, 1], points[:, 2]

        distance = np.linalg.norm(offsets, axis=1)
        near = distance < max_d
        magnitude_n = fields.magnitude[pz, py, px]

        # Angle between each offset and its projection onto the cross-section
        projected = offsets - np.outer(offsets @ e1, e1)
        projected_norm = np.linalg.norm(projected, axis=1)
        has_angle = projected_norm > PROJECTION_EPS
        theta = np.full(len(offsets), np.inf)
        cos_theta = (np.sum(offsets[has_angle] * projected[has_angle], axis=1)
                     / (distance[has_angle] * projected_norm[has_angle]))
        theta[has_angle] = np.arccos(np.clip(cos_theta, -1.0, 1.0))
        if np.any((theta < params.theta_limit) & near & (magnitude_n < magnitude_x)):
            return None

        neighbor_centers = accepted[pz, py, px] & near
        more_central = (magnitude_n > magnitude_x) & (radius_x >= fields.radius[pz, py, px])
        if np.any(neighbor_centers & ~more_central & (distance < max_d * 0.5)):
            return None
        return points[neighbor_centers & more_central]

    def build_graph(self, fields: TubeFields,
                    centerpoints: List[Position]) -> Tuple[nx.Graph, Dict[int, Tuple[int, int]]]:
        """Link each centerpoint to its best pair of opposite neighbours

        Returns:
            Tuple of (graph, pairs): vertices are indices into centerpoints
            with a 'pos' attribute, pairs maps a vertex to its chosen pair
        """
        params = self.params
        graph = nx.Graph()
        for i, pos in enumerate(centerpoints):
            graph.add_node(i, pos=pos)
        pairs: Dict[int, Tuple[int, int]] = {}
        if len(centerpoints) < 3:
            return graph, pairs

        positions = np.array(centerpoints, dtype=np.float64)
        tree = KDTree(positions)
        for a in tqdm(range(len(positions)), desc="Linking centerpoints", leave=False):
            xa = positions[a]
            neighbors = sorted(j for j in tree.query_ball_point(xa, params.max_distance) if j != a)
            if len(neighbors) < 2:
                continue
            neighbors = np.array(neighbors)

            vectors = positions[neighbors] - xa
            lengths = np.linalg.norm(vectors, axis=1)
            units = vectors / lengths[:, None]
            supported = np.array([
                mean_along_segment(fields.tdf, xa, positions[b], params.samples)
                >= params.min_average_tdf
                for b in neighbors
            ])

            angles = np.arccos(np.clip(units @ units.T, -1.0, 1.0))
            valid = (angles >= params.min_pair_angle) & supported[:, None] & supported[None, :]
            np.fill_diagonal(valid, False)
            if not valid.any():
                continue

            # Shortest total length, first pair in neighbour order on ties
            total = np.where(valid, lengths[:, None] + lengths[None, :], np.inf)
            i, j = np.unravel_index(int(np.argmin(total)), total.shape)
            b1, b2 = int(neighbors[i]), int(neighbors[j])
            for b in (b1, b2):
                weight = mean_along_segment(fields.magnitude, xa, positions[b], params.samples)
                graph.add_edge(a, b, weight=weight)
            pairs[a] = (b1, b2)

        return graph, pairs

    def _rasterize(self, graph: nx.Graph, component: List[int], mask: np.ndarray) -> None:
        """Draw the edges of one component: 1 along links, 2 at vertices"""
        for a in component:
            xa = graph.nodes[a]['pos']
            for b in graph.adj[a]:
                xb = graph.nodes[b]['pos']
                points = sample_segment(xa, xb, self.params.samples)
                mask[points[:, 2], points[:, 1], points[:, 0]] = 1
                mask[xb[2], xb[1], xb[0]] = 2
                mask[xa[2], xa[1], xa[0]] = 2
