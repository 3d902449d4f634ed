"""Randomization declarations and condition probability matrices."""
from .condition_pr import (
    ConditionPrMatrix,
    JointPr,
    as_condition_pr_matrix,
    declaration_to_condition_pr_mat,
    gen_joint_pr_complete,
    gen_pr_matrix_block,
    gen_pr_matrix_cluster,
    gen_pr_matrix_complete,
    gen_pr_matrix_simple,
    permutations_to_condition_pr_mat,
)
from .declaration import (
    BlockedClusteredDesign,
    BlockedDesign,
    ClusteredDesign,
    CompleteDesign,
    CustomDesign,
    RandomizationDeclaration,
    SimpleDesign,
    declare_ra,
)

__all__ = [
    "BlockedClusteredDesign",
    "BlockedDesign",
    "ClusteredDesign",
    "CompleteDesign",
    "ConditionPrMatrix",
    "CustomDesign",
    "JointPr",
    "RandomizationDeclaration",
    "SimpleDesign",
    "as_condition_pr_matrix",
    "declaration_to_condition_pr_mat",
    "declare_ra",
    "gen_joint_pr_complete",
    "gen_pr_matrix_block",
    "gen_pr_matrix_cluster",
    "gen_pr_matrix_complete",
    "gen_pr_matrix_simple",
    "permutations_to_condition_pr_mat",
]
