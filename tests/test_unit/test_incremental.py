"""
Unit tests for incremental edge updates and free-root moves.
"""

import numpy as np
import pytest

from prunelik.core.data import TipData
from prunelik.core.incremental import IncrementalUpdater
from prunelik.core.model import MixtureModel
from prunelik.core.session import LikelihoodSession
from prunelik.optimize.newton import EdgeLengthOptimizer


def _full_log_likelihood(edges, lengths, model, tips):
    with LikelihoodSession(edges, lengths, model, tips) as session:
        return session.log_likelihood()


def _with_length(edges, lengths, child, value):
    changed = lengths.copy()
    changed[edges.edge_index(child)] = value
    return changed


@pytest.fixture
def session(five_tip_tree, five_tip_data, hky_gamma_model):
    edges, lengths = five_tip_tree
    with LikelihoodSession(edges, lengths, hky_gamma_model, five_tip_data) as s:
        s.log_likelihood()
        yield s


class TestMoves:
    """Test moving the free root around the tree."""

    @pytest.mark.parametrize("target", [6, 7, 8])
    def test_move_preserves_likelihood(self, session, target):
        """Test that the free root holds the full likelihood wherever it is."""
        expected = session.site_log_likelihoods()
        updater = IncrementalUpdater(session)

        updater.move_to(target)

        assert session.free_root == target
        np.testing.assert_allclose(session.free_root_site_log_likelihoods(), expected, rtol=1e-10)

    def test_round_trip(self, session):
        """Test a walk across the whole tree and back to the root."""
        expected = session.log_likelihood()
        updater = IncrementalUpdater(session)

        for node in (6, 7, 6, 8, 7, 8):
            updater.move_to(node)
            np.testing.assert_allclose(session.free_root_log_likelihood(), expected, rtol=1e-10)

    def test_move_to_leaf(self, session):
        """Test that a leaf cannot become the free root."""
        with pytest.raises(ValueError, match="internal node"):
            IncrementalUpdater(session).move_to(3)

    def test_full_pass_resets_free_root(self, session):
        """Test that a full pass puts the free root back at the tree root."""
        IncrementalUpdater(session).move_to(7)
        session.log_likelihood()

        assert session.free_root == 8


class TestExposeCommit:
    """Test exposing an edge, evaluating it and committing a length."""

    @pytest.mark.parametrize("parent, child", [(6, 1), (8, 3), (8, 7), (7, 5)])
    def test_rotated_edge_reproduces_likelihood(self, session, parent, child):
        """Test the rotated edge at the current length and at a new length."""
        edges, lengths = session.edges, session.lengths.copy()
        model, tips = session.model, session.tips
        optimizer = EdgeLengthOptimizer.from_model(model, tips.weights)
        current = session.log_likelihood()

        exposed = IncrementalUpdater(session).expose(parent, child)

        assert exposed.rotated.shape == (4, tips.n_sites, 4)
        assert exposed.length == lengths[edges.edge_index(child)]
        np.testing.assert_allclose(
            optimizer.log_likelihood(exposed.rotated, exposed.length, exposed.baseline, exposed.log_scale),
            current,
            rtol=1e-10,
        )
        np.testing.assert_allclose(
            optimizer.log_likelihood(exposed.rotated, 0.37, exposed.baseline, exposed.log_scale),
            _full_log_likelihood(edges, _with_length(edges, lengths, child, 0.37), model, tips),
            rtol=1e-10,
        )

    @pytest.mark.parametrize("parent, child", [(6, 2), (8, 6), (7, 4)])
    def test_commit_same_length(self, session, parent, child):
        """Test that downdate then commit with the old length changes nothing."""
        expected = session.site_log_likelihoods()
        updater = IncrementalUpdater(session)

        exposed = updater.expose(parent, child)
        updater.commit(parent, child, exposed.length)

        np.testing.assert_allclose(session.free_root_site_log_likelihoods(), expected, rtol=1e-10)

    @pytest.mark.parametrize("parent, child", [(8, 3), (6, 2), (7, 4)])
    def test_leaf_commit_same_length_is_exact(self, session, parent, child):
        """Test that a leaf edge downdated and re-applied leaves the arena bit-identical."""
        updater = IncrementalUpdater(session)
        updater.move_to(parent)
        before = session.store.flat.copy()

        exposed = updater.expose(parent, child)
        assert not np.array_equal(session.store.flat, before)
        updater.commit(parent, child, exposed.length)

        np.testing.assert_array_equal(session.store.flat, before)

    def test_root_leaf_commit_matches_full_pass(self, session):
        """Test that re-applying a root leaf edge reproduces a fresh traversal exactly."""
        full = session.store.flat.copy()
        updater = IncrementalUpdater(session)

        exposed = updater.expose(8, 3)
        updater.commit(8, 3, exposed.length)

        np.testing.assert_array_equal(session.store.flat, full)

    @pytest.mark.parametrize("parent, child", [(6, 1), (8, 7)])
    def test_commit_new_length(self, session, parent, child):
        """Test that a committed length matches a full pass with that length."""
        edges, model, tips = session.edges, session.model, session.tips
        expected = _full_log_likelihood(
            edges, _with_length(edges, session.lengths, child, 0.02), model, tips
        )
        updater = IncrementalUpdater(session)

        updater.expose(parent, child)
        updater.commit(parent, child, 0.02)

        np.testing.assert_allclose(session.free_root_log_likelihood(), expected, rtol=1e-10)

    def test_commit_moves_free_root(self, session):
        """Test that go_down moves the free root and go_up does not."""
        updater = IncrementalUpdater(session)

        updater.expose(8, 3)
        updater.commit(8, 3, 0.1)
        assert session.free_root == 8

        updater.expose(8, 7)
        updater.commit(8, 7, 0.1)
        assert session.free_root == 7

    def test_edge_sequence(self, session):
        """Test several updates in a row against a single full pass."""
        edges, model, tips = session.edges, session.model, session.tips
        updater = IncrementalUpdater(session)
        new_lengths = session.lengths.copy()

        for (parent, child), value in zip(edges.preorder(), [0.2, 0.01, 0.3, 0.05, 0.15, 0.4, 0.08]):
            updater.expose(parent, child)
            updater.commit(parent, child, value)
            new_lengths[edges.edge_index(child)] = value

        expected = _full_log_likelihood(edges, new_lengths, model, tips)
        np.testing.assert_allclose(session.free_root_log_likelihood(), expected, rtol=1e-10)


class TestScaledUpdates:
    """Test incremental updates on a tree deep enough to need rescaling."""

    def test_rotated_edge_with_scaling(self, ladder, simulate, jc69_eigen):
        """Test that rate classes rescaled a different number of times still mix correctly."""
        edges = ladder(40)
        lengths = np.full(edges.n_edges, 0.3)
        pi = np.full(4, 0.25)
        states = simulate(edges, lengths, jc69_eigen, pi, 60, seed=9)
        tips = TipData.from_states(states, n_states=4)
        model = MixtureModel.gamma(jc69_eigen, pi, shape=0.5, p_invariant=0.1)
        optimizer = EdgeLengthOptimizer.from_model(model, tips.weights)
        child = edges.n_tips + 10
        parent = edges.parent_of(child)

        with LikelihoodSession(edges, lengths, model, tips) as session:
            current = session.log_likelihood()
            counts = session.root_scaling()
            exposed = IncrementalUpdater(session).expose(parent, child)

        assert np.any(counts.max(axis=0) != counts.min(axis=0))
        np.testing.assert_allclose(
            optimizer.log_likelihood(exposed.rotated, exposed.length, exposed.baseline, exposed.log_scale),
            current,
            rtol=1e-10,
        )
        np.testing.assert_allclose(
            optimizer.log_likelihood(exposed.rotated, 0.9, exposed.baseline, exposed.log_scale),
            _full_log_likelihood(edges, _with_length(edges, lengths, child, 0.9), model, tips),
            rtol=1e-10,
        )

    def test_invariant_baseline_on_deep_tree(self, ladder, jc69_eigen):
        """Test invariant sites when the root was rescaled dozens of times."""
        edges = ladder(700)
        lengths = np.full(edges.n_edges, 1.0)
        states = np.random.default_rng(3).integers(0, 4, size=(700, 20))
        states[:, 0] = 2
        tips = TipData.from_states(states, n_states=4)
        pi = np.full(4, 0.25)
        model = MixtureModel.gamma(jc69_eigen, pi, shape=0.5, n_categories=2, p_invariant=0.1)
        optimizer = EdgeLengthOptimizer.from_model(model, tips.weights)
        child = edges.n_tips + 350
        parent = edges.parent_of(child)

        with LikelihoodSession(edges, lengths, model, tips) as session:
            current = session.log_likelihood()
            counts = session.root_scaling()
            exposed = IncrementalUpdater(session).expose(parent, child)

        assert counts.min(axis=0).max() >= 32
        assert np.all(np.isfinite(exposed.baseline))
        assert exposed.baseline[0] > 0
        np.testing.assert_array_equal(exposed.baseline[1:], 0.0)
        np.testing.assert_allclose(
            optimizer.log_likelihood(exposed.rotated, exposed.length, exposed.baseline, exposed.log_scale),
            current,
            rtol=1e-10,
        )

        result = optimizer.optimize(exposed.rotated, exposed.length, exposed.baseline, exposed.log_scale)
        assert result.iterations > 0
        assert np.isfinite(result.log_likelihood)
        assert result.log_likelihood >= current - 1e-8 * abs(current)


class TestDegenerateSites:
    """Test propagation of zero divisors."""

    def test_zero_contribution_propagates_nan(self, five_tip_tree, jc69_model):
        """Test that dividing out a zero contribution yields NaN, not an exception."""
        edges, lengths = five_tip_tree
        # Row 4 of the contrast matrix excludes every state
        contrast = np.vstack([np.eye(4), np.zeros((1, 4))])
        codes = np.zeros((5, 3), dtype=int)
        codes[0, 1] = 4
        tips = TipData(codes=codes, contrast=contrast)

        with LikelihoodSession(edges, lengths, jc69_model, tips) as session:
            site_log = session.site_log_likelihoods()
            IncrementalUpdater(session).downdate(6, 1, lengths[0])

            assert site_log[1] == -np.inf
            assert np.all(np.isnan(session.partial(6, 0)[1]))
            assert np.all(np.isfinite(session.partial(6, 0)[[0, 2]]))


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
