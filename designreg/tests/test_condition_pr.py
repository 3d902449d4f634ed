from itertools import combinations
from math import comb

import numpy as np
import pandas as pd
import pytest

from designreg.design import (
    ConditionPrMatrix,
    CustomDesign,
    declaration_to_condition_pr_mat,
    declare_ra,
    gen_joint_pr_complete,
    gen_pr_matrix_block,
    gen_pr_matrix_cluster,
    gen_pr_matrix_complete,
    gen_pr_matrix_simple,
    permutations_to_condition_pr_mat,
)
from designreg.exceptions import DesignMismatchError, InputShapeError

# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------

def _assignments(n, n_treated):
    out = []
    for treated in combinations(range(n), n_treated):
        z = np.zeros(n)
        z[list(treated)] = 1.0
        out.append(z)
    return out

def _weighted_pr_mat(assignments, weights):
    n = assignments[0].shape[0]
    P = np.zeros((2 * n, 2 * n))
    for z, w in zip(assignments, weights):
        m = np.concatenate([1.0 - z, z])
        P += w * np.outer(m, m)
    return P

def _enumerated_complete(n, pr):
    """Exact matrix from all assignment sets, weighted by the remainder."""
    n_treated = pr * n
    lo = int(np.floor(n_treated + 1e-12))
    rem = n_treated - lo
    assignments, weights = [], []
    for k, mass in ((lo, 1.0 - rem), (lo + 1, rem)):
        if mass <= 0.0 or k > n:
            continue
        sets = _assignments(n, k)
        assignments += sets
        weights += [mass / comb(n, k)] * len(sets)
    return _weighted_pr_mat(assignments, weights)

def _perms_from_cluster_choices(clusters, chosen_sets):
    clusters = np.asarray(clusters)
    cols = [np.isin(clusters, list(s)).astype(float) for s in chosen_sets]
    return np.column_stack(cols)

# ---------------------------------------------------------------------
# Matrix container
# ---------------------------------------------------------------------

def test_condition_pr_matrix_invariants():
    P = declaration_to_condition_pr_mat(declare_ra(6, prob=0.5))
    n = P.n_units
    assert n == 6
    vals = np.asarray(P)
    assert np.allclose(vals, vals.T)
    assert np.all((vals >= 0.0) & (vals <= 1.0))
    assert np.all(np.diag(P.quadrant(0, 1)) == 0.0)
    p0, p1 = P.marginals()
    assert np.allclose(p0 + p1, 1.0)

def test_condition_pr_matrix_names_and_frame():
    P = declaration_to_condition_pr_mat(declare_ra(3, prob=0.5))
    assert P.names == ["0_1", "0_2", "0_3", "1_1", "1_2", "1_3"]
    frame = P.to_frame()
    assert isinstance(frame, pd.DataFrame)
    assert frame.loc["1_2", "1_2"] == pytest.approx(0.5)
    assert frame.loc["0_1", "1_1"] == 0.0

def test_condition_pr_matrix_is_read_only():
    P = ConditionPrMatrix(gen_pr_matrix_simple([0.5, 0.5]))
    with pytest.raises(ValueError):
        P.values[0, 0] = 0.0

def test_condition_pr_matrix_validation():
    with pytest.raises(InputShapeError, match="square"):
        ConditionPrMatrix(np.ones((3, 3)) * 0.5)
    bad = gen_pr_matrix_simple([0.5, 0.5])
    bad[0, 1] = 0.9
    with pytest.raises(InputShapeError, match="symmetric"):
        ConditionPrMatrix(bad)

def test_cross_condition_diagonal_must_be_zero():
    P = gen_pr_matrix_complete(0.5, 4)
    P[0, 4] = P[4, 0] = 0.2
    with pytest.raises(InputShapeError, match="Pr\\(Z_i = 0, Z_i = 1\\) = 0"):
        ConditionPrMatrix(P)

def test_marginals_must_sum_to_one():
    P = gen_pr_matrix_complete(0.5, 4)
    P[0, 0] = 0.9
    with pytest.raises(InputShapeError, match="must equal 1"):
        ConditionPrMatrix(P)

def test_subset_keeps_both_conditions():
    P = declaration_to_condition_pr_mat(declare_ra(4, prob=0.5))
    sub = P.subset([0, 2])
    assert sub.n_units == 2
    assert np.allclose(np.asarray(sub), np.asarray(P)[np.ix_([0, 2, 4, 6], [0, 2, 4, 6])])

# ---------------------------------------------------------------------
# Complete assignment
# ---------------------------------------------------------------------

def test_joint_pr_complete_integer_count():
    joint = gen_joint_pr_complete(0.4, 5)
    assert joint.p11 == pytest.approx(2 / 5 * 1 / 4)
    assert joint.p10 == pytest.approx(3 / 5 * 2 / 4)
    assert joint.p00 == pytest.approx(3 / 5 * 2 / 4)

def test_joint_pr_complete_single_unit_is_nan():
    assert all(np.isnan(v) for v in gen_joint_pr_complete(0.5, 1))

@pytest.mark.parametrize(("n", "pr"), [(5, 0.4), (5, 0.5), (3, 0.5), (3, 0.4), (4, 0.5)])
def test_complete_matches_enumeration(n, pr):
    assert np.allclose(gen_pr_matrix_complete(pr, n), _enumerated_complete(n, pr))

def test_complete_matches_all_permutations():
    perms = np.column_stack(_assignments(5, 2))
    from_decl = declaration_to_condition_pr_mat(declare_ra(5, prob=0.4))
    from_perms = permutations_to_condition_pr_mat(perms)
    assert np.allclose(np.asarray(from_decl), np.asarray(from_perms))

def test_complete_requires_uniform_probability():
    with pytest.raises(DesignMismatchError, match="must be fixed"):
        declaration_to_condition_pr_mat(declare_ra(prob=[0.2, 0.5, 0.5]))

# ---------------------------------------------------------------------
# Simple assignment
# ---------------------------------------------------------------------

def test_simple_matrix_structure():
    p = np.array([0.2, 0.5, 0.7])
    P = gen_pr_matrix_simple(p)
    assert np.allclose(P[3:, 3:][~np.eye(3, dtype=bool)], np.outer(p, p)[~np.eye(3, dtype=bool)])
    assert np.allclose(np.diag(P), np.concatenate([1 - p, p]))
    assert np.all(np.diag(P[:3, 3:]) == 0.0)

def test_permutations_converge_to_simple(rng):
    n, p, R = 5, 0.4, 20000
    perms = (rng.uniform(size=(n, R)) < p).astype(float)
    empirical = np.asarray(permutations_to_condition_pr_mat(perms))
    analytic = np.asarray(declaration_to_condition_pr_mat(declare_ra(n, prob=p, simple=True)))
    assert np.max(np.abs(empirical - analytic)) < 0.02

def test_permutations_must_be_binary():
    with pytest.raises(InputShapeError, match="only have 0s and 1s"):
        permutations_to_condition_pr_mat(np.array([[0.0, 1.0], [0.5, 1.0]]))

# ---------------------------------------------------------------------
# Clustered assignment
# ---------------------------------------------------------------------

def test_cluster_complete_matches_permutations():
    cl = ["A", "B", "A", "C", "A", "B"]
    perms = _perms_from_cluster_choices(cl, [{"A"}, {"B"}, {"C"}])
    P = declaration_to_condition_pr_mat(declare_ra(clusters=cl, m=1))
    assert np.allclose(np.asarray(P), np.asarray(permutations_to_condition_pr_mat(perms)))

def test_cluster_complete_with_remainder():
    cl = ["A", "B", "A", "C", "A", "B"]
    chosen = [{"A"}, {"B"}, {"C"}, {"A", "B"}, {"A", "C"}, {"B", "C"}]
    perms = _perms_from_cluster_choices(cl, chosen)
    P = declaration_to_condition_pr_mat(declare_ra(clusters=cl, prob=0.5))
    assert np.allclose(np.asarray(P), np.asarray(permutations_to_condition_pr_mat(perms)))

def test_cluster_simple_is_independent_across_clusters():
    cl = np.array([1, 1, 2, 3])
    P = gen_pr_matrix_cluster(cl, np.full(4, 0.3), simple=True)
    # same cluster: always together
    assert P[4, 5] == pytest.approx(0.3)
    assert P[0, 5] == 0.0
    # different clusters: independent
    assert P[4, 6] == pytest.approx(0.09)
    assert P[0, 6] == pytest.approx(0.7 * 0.3)

def test_cluster_probability_must_be_constant_within_cluster():
    with pytest.raises(DesignMismatchError, match="constant within each cluster"):
        gen_pr_matrix_cluster([1, 1, 2], [0.5, 0.4, 0.5])

# ---------------------------------------------------------------------
# Blocked assignment
# ---------------------------------------------------------------------

def test_blocked_matches_permutations():
    bl = np.array(["A", "B", "A", "B", "B", "B"])
    a_units = np.flatnonzero(bl == "A")
    b_units = np.flatnonzero(bl == "B")
    cols = []
    for ta in a_units:
        for tb in b_units:
            z = np.zeros(6)
            z[[ta, tb]] = 1.0
            cols.append(z)
    perms = np.column_stack(cols)
    decl = declare_ra(blocks=bl, block_m=[1, 1])
    P = declaration_to_condition_pr_mat(decl)
    assert np.allclose(np.asarray(P), np.asarray(permutations_to_condition_pr_mat(perms)))

def test_blocked_marginals_round_trip():
    bl = ["x", "x", "x", "y", "y", "z", "z", "z", "z"]
    decl = declare_ra(blocks=bl, block_m={"x": 1, "y": 1, "z": 3})
    P = declaration_to_condition_pr_mat(decl)
    p0, p1 = P.marginals()
    assert np.array_equal(p1, decl.prob)
    assert np.allclose(p0, 1.0 - decl.prob)

def test_blocked_cross_block_entries_are_products():
    bl = np.array(["A", "A", "B", "B", "B"])
    prob = np.array([0.5, 0.5, 1 / 3, 1 / 3, 1 / 3])
    P = gen_pr_matrix_block(bl, prob)
    assert P[5 + 0, 5 + 2] == pytest.approx(0.5 / 3)
    assert P[0, 5 + 3] == pytest.approx(0.5 / 3)
    # within-block entries follow complete assignment
    assert P[5 + 0, 5 + 1] == 0.0
    assert P[5 + 2, 5 + 3] == pytest.approx(0.0)
    assert P[2, 3] == pytest.approx(1 / 3)

def test_blocked_requires_uniform_probability_within_block():
    with pytest.raises(DesignMismatchError):
        gen_pr_matrix_block(["A", "A", "B", "B"], [0.5, 0.2, 0.5, 0.5])

def test_blocked_clustered_matches_permutations():
    bl = ["A", "B", "B", "B", "A", "A", "B", "B"]
    cl = [1, 2, 3, 3, 4, 4, 5, 5]
    chosen = [a | b for a in ({1}, {4}) for b in ({2, 3}, {2, 5}, {3, 5})]
    perms = _perms_from_cluster_choices(cl, chosen)
    decl = declare_ra(blocks=bl, clusters=cl, block_m=[1, 2])
    P = declaration_to_condition_pr_mat(decl)
    assert np.allclose(np.asarray(P), np.asarray(permutations_to_condition_pr_mat(perms)))

# ---------------------------------------------------------------------
# Custom designs and dispatch
# ---------------------------------------------------------------------

def test_custom_design_equals_permutations():
    perms = np.array([[1, 0, 0], [0, 1, 0], [0, 0, 1], [1, 1, 0]], dtype=float)
    decl = CustomDesign(permutation_matrix=perms)
    assert np.allclose(decl.prob, perms.mean(axis=1))
    assert np.allclose(
        np.asarray(declaration_to_condition_pr_mat(decl)),
        np.asarray(permutations_to_condition_pr_mat(perms)),
    )

def test_dispatch_rejects_non_declarations():
    with pytest.raises(TypeError, match="declaration must be one of"):
        declaration_to_condition_pr_mat(np.array([0, 1, 1, 0]))
