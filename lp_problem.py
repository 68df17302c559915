"""
Standard-form linear program used by the PDHG solver.

Problem formulation:
    minimize    c^T x
    subject to  K[:num_equalities] x  = q[:num_equalities]
                K[num_equalities:] x >= q[num_equalities:]
                l <= x <= u

The constraint matrix K may be dense or a sparse COO tensor.
"""

from dataclasses import dataclass

import torch


@dataclass(frozen=True, eq=False)
class LinearProgrammingProblem:
    """Immutable standard-form LP. Leading `num_equalities` rows are equalities, the rest are `>=`."""

    objective_vector: torch.Tensor
    constraint_matrix: torch.Tensor
    right_hand_side: torch.Tensor
    num_equalities: int
    variable_lower_bound: torch.Tensor
    variable_upper_bound: torch.Tensor

    def __post_init__(self):
        K = self.constraint_matrix
        c, q = self.objective_vector, self.right_hand_side
        l, u = self.variable_lower_bound, self.variable_upper_bound
        assert K.ndim == 2
        assert c.ndim == q.ndim == l.ndim == u.ndim == 1
        assert K.shape[0] == q.shape[0]
        assert K.shape[1] == c.shape[0] == l.shape[0] == u.shape[0]
        assert 0 <= self.num_equalities <= K.shape[0], f"num_equalities must be in [0, {K.shape[0]}], got {self.num_equalities}"
        assert bool(torch.all(l <= u)), "variable_lower_bound must not exceed variable_upper_bound"

    @classmethod
    def from_blocks(
        cls,
        c: torch.Tensor,
        G: torch.Tensor, h: torch.Tensor,
        A: torch.Tensor, b: torch.Tensor,
        l: torch.Tensor, u: torch.Tensor,
    ) -> "LinearProgrammingProblem":
        """
        Build a problem from separated blocks G x >= h, A x = b, l <= x <= u.

        Equalities are placed first: K = [A; G], q = [b; h].
        """
        assert G.is_sparse == A.is_sparse, "G and A must both be sparse or both be dense"
        return cls(
            objective_vector=c,
            constraint_matrix=torch.cat([A, G], dim=0),
            right_hand_side=torch.cat([b, h], dim=0),
            num_equalities=A.shape[0],
            variable_lower_bound=l,
            variable_upper_bound=u,
        )

    @property
    def num_variables(self) -> int:
        return self.constraint_matrix.shape[1]

    @property
    def num_constraints(self) -> int:
        return self.constraint_matrix.shape[0]

    @property
    def num_inequalities(self) -> int:
        return self.num_constraints - self.num_equalities

    @property
    def is_sparse(self) -> bool:
        return self.constraint_matrix.is_sparse

    def nnz(self) -> int:
        """Number of stored nonzeros in the constraint matrix."""
        if self.is_sparse:
            return self.constraint_matrix.coalesce()._nnz()
        return int(torch.count_nonzero(self.constraint_matrix).item())

    def objective_value(self, x: torch.Tensor) -> float:
        return (self.objective_vector @ x).item()
