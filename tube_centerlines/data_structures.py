from dataclasses import dataclass, field
from enum import Enum
from typing import List, Dict, Set, Tuple, Optional, NamedTuple

import networkx as nx
import numpy as np

from .geometry import Position

# Smallest grid edge the traversal boundary margins leave room for
MIN_GRID_SIZE = 6


class FieldShapeError(ValueError):
    """Raised when the input fields do not describe one 3D grid"""


class CenterlineMethod(Enum):
    """Centerline extraction algorithms"""
    RIDGE = "ridge"
    GRAPH = "gpu"

    @classmethod
    def from_name(cls, name: str) -> 'CenterlineMethod':
        """Look up a method by its value or member name (case-insensitive)

        Raises:
            ValueError: If the name matches no method
        """
        key = name.strip().lower()
        for method in cls:
            if key in (method.value, method.name.lower()):
                return method
        valid = ", ".join(sorted({m.value for m in cls} | {m.name.lower() for m in cls}))
        raise ValueError(f"Unknown centerline method '{name}' (expected one of: {valid})")


class GridSize(NamedTuple):
    x: int
    y: int
    z: int

    @classmethod
    def from_shape(cls, shape: Tuple[int, int, int]) -> 'GridSize':
        """Build from a numpy [z, y, x] shape"""
        return cls(int(shape[2]), int(shape[1]), int(shape[0]))

    @property
    def shape(self) -> Tuple[int, int, int]:
        return (self.z, self.y, self.x)


class TubeFields:
    """Per-voxel inputs of the centerline extractors

    Holds the vector field components, the tube detection confidence (TDF)
    and the radius estimate, all as float32 arrays indexed [z, y, x]. The
    derived views (magnitude, normalized components and M = 1 - |F|) are
    computed once on construction. Extractors only read these arrays.
    """

    def __init__(self, fx: np.ndarray, fy: np.ndarray, fz: np.ndarray,
                 tdf: np.ndarray, radius: np.ndarray):
        arrays = {'fx': fx, 'fy': fy, 'fz': fz, 'tdf': tdf, 'radius': radius}
        shapes = {name: np.shape(array) for name, array in arrays.items()}
        if len(set(shapes.values())) != 1:
            raise FieldShapeError(f"Field shapes differ: {shapes}")
        shape = shapes['tdf']
        if len(shape) != 3:
            raise FieldShapeError(f"Fields must be 3D volumes, got shape {shape}")
        if min(shape) < MIN_GRID_SIZE:
            raise FieldShapeError(
                f"Grid {shape} is smaller than {MIN_GRID_SIZE} voxels along an axis")

        self.fx = np.asarray(fx, dtype=np.float32)
        self.fy = np.asarray(fy, dtype=np.float32)
        self.fz = np.asarray(fz, dtype=np.float32)
        self.tdf = np.asarray(tdf, dtype=np.float32)
        self.radius = np.asarray(radius, dtype=np.float32)
        self.size = GridSize.from_shape(shape)

        self.magnitude = np.sqrt(self.fx**2 + self.fy**2 + self.fz**2)
        safe = np.where(self.magnitude > 0, self.magnitude, 1.0)
        # Normalized components, zero where the field vanishes
        self.normalized = tuple(
            np.where(self.magnitude > 0, component / safe, 0.0).astype(np.float32)
            for component in (self.fx, self.fy, self.fz)
        )
        self.m = (1.0 - self.magnitude).astype(np.float32)

    @classmethod
    def from_vector_field(cls, vector_field: np.ndarray, tdf: np.ndarray,
                          radius: np.ndarray) -> 'TubeFields':
        """Build from a [z, y, x, c] vector array (c >= 3, extra components ignored)"""
        vector_field = np.asarray(vector_field)
        if vector_field.ndim != 4 or vector_field.shape[-1] < 3:
            raise FieldShapeError(
                f"Vector field must have shape (z, y, x, 3), got {vector_field.shape}")
        return cls(vector_field[..., 0], vector_field[..., 1], vector_field[..., 2],
                   tdf, radius)

    @property
    def shape(self) -> Tuple[int, int, int]:
        return self.tdf.shape


@dataclass
class CenterlinePoint:
    """A point accepted during ridge traversal"""
    position: Position
    is_large_radius: bool = False
    previous: Optional[int] = None  # handle of the prior point in the growth path


class PathArena:
    """Append-only store of centerline points addressed by integer handles"""

    def __init__(self):
        self.points: List[CenterlinePoint] = []

    def add(self, position: Position, is_large_radius: bool = False,
            previous: Optional[int] = None) -> int:
        self.points.append(CenterlinePoint(position, is_large_radius, previous))
        return len(self.points) - 1

    def __getitem__(self, handle: int) -> CenterlinePoint:
        return self.points[handle]

    def __len__(self) -> int:
        return len(self.points)

    def path(self, handle: int) -> List[Position]:
        """Positions from the start of the growth path up to handle"""
        positions = []
        current = handle
        while current is not None:
            point = self.points[current]
            positions.append(point.position)
            current = point.previous
        positions.reverse()
        return positions


@dataclass
class Traversal:
    """State collected while growing one path from a seed in both directions"""
    seed: Position
    visited: Set[Position] = field(default_factory=set)
    handles: List[int] = field(default_factory=list)
    distance: int = 0
    tube_sum: float = 0.0
    connections: int = 0
    first_connection: Optional[int] = None
    second_connection: Optional[int] = None

    def add(self, position: Position, handle: int, tdf: float) -> None:
        self.visited.add(position)
        self.handles.append(handle)
        self.distance += 1
        self.tube_sum += float(tdf)

    def connect(self, tree_id: int, loop_penalty: int) -> None:
        """Record that the path ran into an existing tree"""
        if self.first_connection is None:
            self.first_connection = tree_id
        elif self.first_connection == tree_id:
            # Both ends hit the same tree, accepting it would close a loop
            self.connections = loop_penalty
        else:
            self.second_connection = tree_id

    @property
    def mean_tube(self) -> float:
        if self.distance == 0:
            return 0.0
        return self.tube_sum / self.distance


class TreeRegistry:
    """Accepted centerline trees: label volume, lengths and point handles

    Tree ids start at 1; label 0 means unlabeled.
    """

    def __init__(self, shape: Tuple[int, int, int]):
        self.labels = np.zeros(shape, dtype=np.int32)
        self.lengths: Dict[int, int] = {}
        self.paths: Dict[int, List[int]] = {}
        self._next_id = 1

    def __len__(self) -> int:
        return len(self.lengths)

    def label_at(self, position: Position) -> int:
        x, y, z = position
        return int(self.labels[z, y, x])

    def _label(self, positions, tree_id: int) -> None:
        if not positions:
            return
        xs, ys, zs = (np.fromiter(axis, dtype=np.intp, count=len(positions))
                      for axis in zip(*positions))
        self.labels[zs, ys, xs] = tree_id

    def add_tree(self, traversal: Traversal) -> int:
        tree_id = self._next_id
        self._next_id += 1
        self._label(traversal.visited, tree_id)
        self.lengths[tree_id] = traversal.distance
        self.paths[tree_id] = list(traversal.handles)
        return tree_id

    def extend_tree(self, tree_id: int, traversal: Traversal) -> None:
        self._label(traversal.visited, tree_id)
        self.lengths[tree_id] += traversal.distance
        self.paths[tree_id].extend(traversal.handles)

    def merge_trees(self, target: int, source: int) -> None:
        """Fold tree source into tree target and forget source"""
        self.labels[self.labels == source] = target
        self.lengths[target] += self.lengths.pop(source)
        self.paths[target].extend(self.paths.pop(source))

    def accept(self, traversal: Traversal) -> int:
        """Store an accepted traversal, joining the trees it connects

        Returns:
            int: Id of the tree now holding the traversal
        """
        if traversal.first_connection is None:
            return self.add_tree(traversal)
        tree_id = traversal.first_connection
        self.extend_tree(tree_id, traversal)
        if traversal.second_connection is not None:
            self.merge_trees(tree_id, traversal.second_connection)
        return tree_id

    def primary_tree(self) -> Optional[int]:
        """Longest tree, the lowest id winning ties"""
        primary = None
        for tree_id in sorted(self.lengths):
            if primary is None or self.lengths[tree_id] > self.lengths[primary]:
                primary = tree_id
        return primary

    def retained_trees(self, tree_min: int) -> List[int]:
        return [tree_id for tree_id in sorted(self.lengths)
                if self.lengths[tree_id] > tree_min]


@dataclass
class RidgeTraversalResult:
    """Output of the ridge traversal extractor"""
    mask: np.ndarray  # uint8, 1 on kept centerline voxels
    tree_lengths: Dict[int, int]
    primary_tree: Optional[int]
    retained_trees: List[int]
    centerline_points: List[CenterlinePoint]
    labels: np.ndarray  # int32 tree id per voxel
    arena: PathArena  # resolves CenterlinePoint.previous handles


@dataclass
class GraphCenterlineResult:
    """Output of the graph centerline extractor"""
    mask: np.ndarray  # int8, 1 along edges and 2 at vertices of the largest component
    graph: nx.Graph
    centerpoints: List[Position]
    components: List[List[int]]
    largest_component: Optional[int]
    valid_components: List[int]
    pairs: Dict[int, Tuple[int, int]] = field(default_factory=dict)
