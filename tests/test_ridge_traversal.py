"""
Tests for ridge traversal centerline extraction in tube_centerlines/ridge_traversal.py.
"""

import numpy as np
import pytest

from tube_centerlines import ridge_traversal
from tube_centerlines.data_structures import PathArena, Traversal, TreeRegistry, TubeFields
from tube_centerlines.geometry import normalize
from tube_centerlines.ridge_traversal import (
    LOOP_PENALTY,
    RidgeTraversalExtractor,
    RidgeTraversalParameters,
    find_seeds,
)
from tube_centerlines.tube_direction import EigenFrame

from conftest import BRANCH_AXIS, MAIN_AXIS, axis_voxels, build_tube_fields


def mask_voxels(mask):
    """Set of (x, y, z) voxels where mask is nonzero."""
    return {(int(x), int(y), int(z)) for z, y, x in np.argwhere(mask)}


class TestRidgeTraversalParameters:
    """Tests for parameter defaults and overrides."""

    def test_defaults(self):
        params = RidgeTraversalParameters()
        assert params.t_high == 0.6
        assert params.d_min == 5
        assert params.m_low == 0.2
        assert params.t_low == 0.4
        assert params.max_below_t_low == 2
        assert params.min_mean_tube == 0.6
        assert params.tree_min == 10

    def test_from_dict_ignores_unknown_keys(self):
        """Known keys are applied, unknown keys are dropped."""
        params = RidgeTraversalParameters.from_dict({'t_high': 0.7, 'not_a_parameter': 1})

        assert params.t_high == 0.7
        assert params.d_min == 5
        assert not hasattr(params, 'not_a_parameter')


class TestFindSeeds:
    """Tests for seed discovery."""

    def test_seeds_are_window_maxima(self, rng):
        """Every seed dominates its -2..+1 window and clears t_high."""
        tdf = rng.uniform(0.0, 1.0, size=(12, 12, 12)).astype(np.float32)
        seeds = find_seeds(tdf, 0.6)

        assert seeds
        for value, _, (x, y, z) in seeds:
            assert 2 <= x < 10 and 2 <= y < 10 and 2 <= z < 10
            assert value >= 0.6
            assert value >= tdf[z - 2:z + 2, y - 2:y + 2, x - 2:x + 2].max()

    def test_all_window_maxima_found(self, rng):
        """No interior window maximum above t_high is missed."""
        tdf = rng.uniform(0.0, 1.0, size=(12, 12, 12)).astype(np.float32)
        found = {pos for _, _, pos in find_seeds(tdf, 0.6)}

        expected = set()
        for z in range(2, 10):
            for y in range(2, 10):
                for x in range(2, 10):
                    value = tdf[z, y, x]
                    if value >= 0.6 and value >= tdf[z - 2:z + 2, y - 2:y + 2, x - 2:x + 2].max():
                        expected.add((x, y, z))
        assert found == expected

    def test_linear_index_order(self, straight_tube):
        """Seeds are listed in linear index order with matching indices."""
        seeds = find_seeds(straight_tube.tdf, 0.6)
        indices = [index for _, index, _ in seeds]

        assert indices == sorted(indices)
        for _, index, (x, y, z) in seeds:
            assert index == x + y * 20 + z * 400
        assert [pos for _, _, pos in seeds] == axis_voxels(*MAIN_AXIS)

    def test_no_seeds_below_threshold(self):
        fields = build_tube_fields([(MAIN_AXIS[0], MAIN_AXIS[1], 0.55)])
        assert find_seeds(fields.tdf, 0.6) == []


class TestTraversalBookkeeping:
    """Tests for connection tracking and acceptance."""

    def test_first_and_second_connection(self):
        traversal = Traversal((5, 5, 5))
        traversal.connect(3, LOOP_PENALTY)
        traversal.connect(7, LOOP_PENALTY)

        assert traversal.first_connection == 3
        assert traversal.second_connection == 7
        assert traversal.connections == 0

    def test_same_tree_twice_is_a_loop(self):
        traversal = Traversal((5, 5, 5))
        traversal.connect(3, LOOP_PENALTY)
        traversal.connect(3, LOOP_PENALTY)

        assert traversal.connections == LOOP_PENALTY
        assert traversal.second_connection is None

    def test_loop_is_rejected(self):
        """A long confident traversal is still rejected if it closes a loop."""
        extractor = RidgeTraversalExtractor()
        traversal = Traversal((5, 5, 5), distance=20, tube_sum=18.0)
        assert extractor.is_acceptable(traversal)

        traversal.connect(1, LOOP_PENALTY)
        traversal.connect(1, LOOP_PENALTY)
        assert not extractor.is_acceptable(traversal)

    @pytest.mark.parametrize("distance, tube_sum, accepted", [
        (5, 4.5, False),   # not longer than d_min
        (6, 5.4, True),
        (6, 3.0, False),   # mean TDF 0.5 is below min_mean_tube
    ])
    def test_acceptance_thresholds(self, distance, tube_sum, accepted):
        extractor = RidgeTraversalExtractor()
        traversal = Traversal((5, 5, 5), distance=distance, tube_sum=tube_sum)
        assert extractor.is_acceptable(traversal) == accepted


class TestRidgeTraversalExtractor:
    """End-to-end tests on synthetic tubes."""

    def test_straight_tube(self, straight_tube):
        """A straight confident tube becomes a single tree covering its axis."""
        result = RidgeTraversalExtractor().extract(straight_tube)
        axis = set(axis_voxels(*MAIN_AXIS))

        assert result.mask.dtype == np.uint8
        assert mask_voxels(result.mask) == axis
        assert result.tree_lengths == {1: 14}
        assert result.primary_tree == 1
        assert result.retained_trees == [1]

    def test_straight_tube_axis_coverage(self, straight_tube):
        """At least 90% of the axis voxels are marked."""
        result = RidgeTraversalExtractor().extract(straight_tube)
        axis = axis_voxels(*MAIN_AXIS)

        covered = sum(result.mask[z, y, x] == 1 for x, y, z in axis)
        assert covered >= 0.9 * len(axis)

    def test_centerline_points(self, straight_tube):
        """Point handles resolve to growth paths that start at the seed."""
        result = RidgeTraversalExtractor().extract(straight_tube)
        positions = [point.position for point in result.centerline_points]

        assert sorted(positions) == axis_voxels(*MAIN_AXIS)
        end_handle = max(range(len(result.arena)),
                         key=lambda h: result.arena[h].position[0])
        assert result.arena.path(end_handle) == axis_voxels(*MAIN_AXIS)
        assert not any(point.is_large_radius for point in result.centerline_points)

    def test_branch_merges_into_main_tree(self, t_junction):
        """A branch ending on an existing tree joins it and adds its length."""
        result = RidgeTraversalExtractor().extract(t_junction)
        expected = set(axis_voxels(*MAIN_AXIS)) | set(axis_voxels(*BRANCH_AXIS))

        assert mask_voxels(result.mask) == expected
        assert result.tree_lengths == {1: 20}
        assert set(np.unique(result.labels)) == {0, 1}

    def test_no_voxel_visited_twice(self, t_junction):
        """Each tree labels exactly as many voxels as its accumulated length."""
        result = RidgeTraversalExtractor().extract(t_junction)

        for tree_id, length in result.tree_lengths.items():
            assert int(np.sum(result.labels == tree_id)) == length
        positions = [point.position for point in result.centerline_points]
        assert len(positions) == len(set(positions))

    def test_short_tube_rejected(self):
        """A tube of d_min voxels is not longer than d_min."""
        fields = build_tube_fields([((5, 10, 10), (9, 10, 10), 0.9)])
        result = RidgeTraversalExtractor().extract(fields)

        assert not result.mask.any()
        assert result.primary_tree is None
        assert result.tree_lengths == {}

    def test_short_tube_kept_with_lower_d_min(self):
        """The longest tree is always kept, even below tree_min."""
        fields = build_tube_fields([((5, 10, 10), (9, 10, 10), 0.9)])
        result = RidgeTraversalExtractor(RidgeTraversalParameters(d_min=4)).extract(fields)

        assert mask_voxels(result.mask) == set(axis_voxels((5, 10, 10), (9, 10, 10)))
        assert result.retained_trees == []
        assert result.primary_tree == 1

    def test_low_mean_confidence_rejected(self):
        """Seeds above t_high still need a mean TDF above min_mean_tube."""
        fields = build_tube_fields([(MAIN_AXIS[0], MAIN_AXIS[1], 0.62)])
        params = RidgeTraversalParameters(min_mean_tube=0.7)
        result = RidgeTraversalExtractor(params).extract(fields)

        assert not result.mask.any()

    def test_empty_fields(self, empty_fields):
        """No confident voxel gives an empty mask without error."""
        result = RidgeTraversalExtractor().extract(empty_fields)

        assert result.mask.shape == empty_fields.shape
        assert not result.mask.any()
        assert result.centerline_points == []

    def test_fields_not_modified(self, straight_tube):
        """Extraction only reads the input arrays."""
        before = [a.copy() for a in (straight_tube.fx, straight_tube.fy, straight_tube.fz,
                                     straight_tube.tdf, straight_tube.radius)]
        RidgeTraversalExtractor().extract(straight_tube)
        after = (straight_tube.fx, straight_tube.fy, straight_tube.fz,
                 straight_tube.tdf, straight_tube.radius)

        for a, b in zip(before, after):
            np.testing.assert_array_equal(a, b)


def traverse_from(fields, seed):
    """Run a single traversal with no existing trees."""
    return RidgeTraversalExtractor().traverse(fields, seed, TreeRegistry(fields.shape), PathArena())


class TestTraversalStops:
    """Tests for the conditions that end a growth direction."""

    def test_low_confidence_run(self, straight_tube):
        """Three steps below t_low are accepted, the fourth ends the path."""
        tdf = straight_tube.tdf.copy()
        tdf[10, 10, 10:17] = 0.3
        fields = TubeFields(straight_tube.fx, straight_tube.fy, straight_tube.fz,
                            tdf, straight_tube.radius)

        traversal = traverse_from(fields, (5, 10, 10))

        assert traversal.visited == set(axis_voxels((3, 10, 10), (12, 10, 10)))
        assert traversal.distance == 10
        assert traversal.connections == 0

    def test_low_confidence_run_resets(self, straight_tube):
        """A confident voxel between short low runs resets the count."""
        tdf = straight_tube.tdf.copy()
        tdf[10, 10, 7:10] = 0.3
        tdf[10, 10, 11:14] = 0.3
        fields = TubeFields(straight_tube.fx, straight_tube.fy, straight_tube.fz,
                            tdf, straight_tube.radius)

        traversal = traverse_from(fields, (5, 10, 10))

        assert traversal.visited == set(axis_voxels(*MAIN_AXIS))

    def test_low_m(self, straight_tube):
        """A winner far from the tube center (M below m_low) ends the path."""
        fx = straight_tube.fx.copy()
        fx[10, 10, 12] = 0.9  # M = 0.1 at (12, 10, 10)
        fields = TubeFields(fx, straight_tube.fy, straight_tube.fz,
                            straight_tube.tdf, straight_tube.radius)

        traversal = traverse_from(fields, (5, 10, 10))

        assert traversal.visited == set(axis_voxels((3, 10, 10), (11, 10, 10)))

    def test_revisit(self, straight_tube, monkeypatch):
        """Stepping back onto a voxel of the same path ends the direction."""
        steps = iter([(6, 10, 10), (7, 10, 10), (6, 10, 10), None])
        extractor = RidgeTraversalExtractor()
        monkeypatch.setattr(extractor, "_next_point", lambda fields, position, t_i: next(steps))

        traversal = extractor.traverse(straight_tube, (5, 10, 10),
                                       TreeRegistry(straight_tube.shape), PathArena())

        assert traversal.visited == {(5, 10, 10), (6, 10, 10), (7, 10, 10)}
        assert traversal.distance == 3
        assert traversal.first_connection is None

    def test_both_ends_on_same_tree(self, straight_tube):
        """A path whose two directions reach one tree is a loop and is rejected."""
        registry = TreeRegistry(straight_tube.shape)
        registry.labels[10, 10, 3:6] = 1
        registry.labels[10, 10, 14:17] = 1
        extractor = RidgeTraversalExtractor()

        traversal = extractor.traverse(straight_tube, (10, 10, 10), registry, PathArena())

        assert traversal.visited == set(axis_voxels((6, 10, 10), (13, 10, 10)))
        assert traversal.first_connection == 1
        assert traversal.connections == LOOP_PENALTY
        assert traversal.distance > extractor.params.d_min
        assert traversal.mean_tube > extractor.params.min_mean_tube
        assert not extractor.is_acceptable(traversal)


class TestDirectionUpdate:
    """Tests for following the eigenvector closest to the current direction."""

    X = np.array([1.0, 0.0, 0.0])
    Y = np.array([0.0, 1.0, 0.0])
    Z = np.array([0.0, 0.0, 1.0])

    def update(self, monkeypatch, lambdas, t_i):
        frame = EigenFrame(np.array(lambdas), self.X, self.Y, self.Z)
        monkeypatch.setattr(ridge_traversal, "get_eigen_frame", lambda fields, pos: frame)
        return RidgeTraversalExtractor()._update_direction(None, (5, 5, 5), t_i, t_i)

    def test_smallest_eigenvector_followed(self, monkeypatch):
        """With a non-negative eigenvalue e1 is used even if e3 is better aligned."""
        t_i = normalize((0.1, 0.2, 0.9))
        result = self.update(monkeypatch, [0.0, -1.0, -2.0], t_i)

        np.testing.assert_allclose(result, normalize(self.X + 2 * t_i))

    def test_all_negative_picks_best_aligned(self, monkeypatch):
        t_i = normalize((0.1, 0.2, 0.9))
        result = self.update(monkeypatch, [-1.0, -2.0, -3.0], t_i)

        np.testing.assert_allclose(result, normalize(self.Z + 2 * t_i))

    def test_all_negative_keeps_orientation(self, monkeypatch):
        """The chosen eigenvector is flipped to point along the path."""
        t_i = normalize((0.1, -0.9, 0.3))
        result = self.update(monkeypatch, [-1.0, -2.0, -3.0], t_i)

        np.testing.assert_allclose(result, normalize(-self.Y + 2 * t_i))

    def test_all_negative_tie_prefers_e2(self, monkeypatch):
        """Equally aligned e2 and e3: the earlier eigenvector wins."""
        t_i = normalize((0.0, 0.7, 0.7))
        result = self.update(monkeypatch, [-1.0, -2.0, -3.0], t_i)

        np.testing.assert_allclose(result, normalize(self.Y + 2 * t_i))

    def test_all_negative_tie_prefers_e1(self, monkeypatch):
        t_i = normalize((0.7, 0.0, 0.7))
        result = self.update(monkeypatch, [-1.0, -2.0, -3.0], t_i)

        np.testing.assert_allclose(result, normalize(self.X + 2 * t_i))


class TestLoopRejection:
    """End-to-end test of a bridge closing a loop between merged trees."""

    # Grid (z, y, x): room for two parallel tubes joined by two bridges
    SHAPE = (20, 22, 22)
    LOWER = ((3, 5, 10), (18, 5, 10), 0.9)
    UPPER = ((3, 17, 10), (18, 17, 10), 0.9)
    FIRST_BRIDGE = ((6, 6, 10), (6, 16, 10), 0.8)
    SECOND_BRIDGE = ((14, 6, 10), (14, 16, 10), 0.7)
    # Below LARGE_RADIUS neighbours are scored by TDF * M, so each tube keeps
    # to its own axis where a weaker bridge touches it diagonally
    RADIUS = 1.0

    def test_second_bridge_rejected(self):
        """The first bridge merges both tubes, the second would close a loop."""
        fields = build_tube_fields(
            [self.LOWER, self.UPPER, self.FIRST_BRIDGE, self.SECOND_BRIDGE],
            shape=self.SHAPE, radius=self.RADIUS)
        result = RidgeTraversalExtractor().extract(fields)

        expected = (set(axis_voxels(*self.LOWER[:2])) | set(axis_voxels(*self.UPPER[:2]))
                    | set(axis_voxels(*self.FIRST_BRIDGE[:2])))
        assert mask_voxels(result.mask) == expected
        assert list(result.tree_lengths.values()) == [16 + 16 + 11]

    def test_bridge_between_different_trees_kept(self):
        """The same bridge is accepted when its ends lie on two different trees."""
        fields = build_tube_fields(
            [self.LOWER, self.UPPER, self.SECOND_BRIDGE], shape=self.SHAPE, radius=self.RADIUS)
        result = RidgeTraversalExtractor().extract(fields)

        assert set(axis_voxels(*self.SECOND_BRIDGE[:2])) <= mask_voxels(result.mask)
        assert list(result.tree_lengths.values()) == [16 + 16 + 11]
