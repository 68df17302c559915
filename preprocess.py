"""
Problem rescaling/preconditioning matching cuPDLP.jl / FirstOrderLp.jl.

Implements:
- Ruiz rescaling (L-infinity version)
- L2-norm rescaling
- Pock-Chambolle rescaling

Every pass divides row i of K by r_i and column j by s_j, and rescales the rest
of the problem consistently:
    c <- c / s,  l <- l * s,  u <- u * s,  q <- q / r.
A scaled solution maps back to the original space via x = x_scaled / s and
y = y_scaled / r.
"""

import logging
from dataclasses import dataclass

import torch

from lp_problem import LinearProgrammingProblem

logger = logging.getLogger(__name__)

eps_zero = 1e-12


@dataclass(frozen=True, eq=False)
class ScaledProblem:
    """A rescaled LP together with the cumulative rescaling vectors."""

    original_problem: LinearProgrammingProblem
    scaled_problem: LinearProgrammingProblem
    constraint_rescaling: torch.Tensor
    variable_rescaling: torch.Tensor


def col_max(M: torch.Tensor) -> torch.Tensor:
    """Column-wise max of |M| for dense or sparse M."""
    if not M.is_sparse:
        return M.abs().max(dim=0)[0] if M.shape[0] > 0 else torch.zeros(M.shape[1], dtype=M.dtype, device=M.device)
    M_c = M.abs().coalesce()
    return torch.zeros(M.shape[1], dtype=M.dtype, device=M.device).scatter_reduce_(0, M_c.indices()[1], M_c.values(), reduce='amax', include_self=True)


def row_max(M: torch.Tensor) -> torch.Tensor:
    """Row-wise max of |M| for dense or sparse M."""
    if not M.is_sparse:
        return M.abs().max(dim=1)[0] if M.shape[1] > 0 else torch.zeros(M.shape[0], dtype=M.dtype, device=M.device)
    M_c = M.abs().coalesce()
    return torch.zeros(M.shape[0], dtype=M.dtype, device=M.device).scatter_reduce_(0, M_c.indices()[0], M_c.values(), reduce='amax', include_self=True)


def abs_power_sum(M: torch.Tensor, p: float, dim: int) -> torch.Tensor:
    """sum(|M|^p) along `dim`, always returned dense."""
    if M.is_sparse:
        M_c = M.abs().coalesce()
        out_dim = 1 - dim
        return torch.zeros(M.shape[out_dim], dtype=M.dtype, device=M.device).index_add_(0, M_c.indices()[out_dim], M_c.values() ** p)
    return (M.abs() ** p).sum(dim=dim)


def safe_rescaling(factors: torch.Tensor) -> torch.Tensor:
    """Replace zero, tiny or non-finite factors by 1 (empty or ill-conditioned rows/columns)."""
    return torch.where(torch.isfinite(factors) & (factors > eps_zero), factors, torch.ones_like(factors))


def apply_rescaling(
    problem: LinearProgrammingProblem,
    constraint_rescaling: torch.Tensor,
    variable_rescaling: torch.Tensor,
) -> LinearProgrammingProblem:
    """Returns the problem with K = diag(1/r) K diag(1/s) and c, q, l, u rescaled to match."""
    K = problem.constraint_matrix * (1.0 / constraint_rescaling).unsqueeze(1) * (1.0 / variable_rescaling).unsqueeze(0)
    if K.is_sparse:
        K = K.coalesce()
    return LinearProgrammingProblem(
        objective_vector=problem.objective_vector / variable_rescaling,
        constraint_matrix=K,
        right_hand_side=problem.right_hand_side / constraint_rescaling,
        num_equalities=problem.num_equalities,
        variable_lower_bound=problem.variable_lower_bound * variable_rescaling,
        variable_upper_bound=problem.variable_upper_bound * variable_rescaling,
    )


def ruiz_rescaling(problem: LinearProgrammingProblem, num_iterations: int = 10) -> tuple:
    """
    Ruiz rescaling with p=Inf (matching cuPDLP.jl default).

    Iteratively rescales rows and columns of the constraint matrix to equilibrate
    their infinity norms: each pass divides a row (column) by the square root of
    its largest absolute entry.

    Returns:
        Tuple of (scaled_problem, constraint_rescaling, variable_rescaling)
    """
    m, n = problem.num_constraints, problem.num_variables
    K = problem.constraint_matrix
    cum_constraint_rescaling = torch.ones(m, device=K.device, dtype=K.dtype)
    cum_variable_rescaling = torch.ones(n, device=K.device, dtype=K.dtype)

    for _ in range(num_iterations):
        K = problem.constraint_matrix
        variable_rescaling = safe_rescaling(torch.sqrt(col_max(K)))
        constraint_rescaling = safe_rescaling(torch.sqrt(row_max(K)))

        problem = apply_rescaling(problem, constraint_rescaling, variable_rescaling)
        cum_constraint_rescaling = cum_constraint_rescaling * constraint_rescaling
        cum_variable_rescaling = cum_variable_rescaling * variable_rescaling

    return problem, cum_constraint_rescaling, cum_variable_rescaling


def l2_norm_rescaling(problem: LinearProgrammingProblem) -> tuple:
    """
    Divides each row and column by the square root of its L2 norm.

    Returns:
        Tuple of (scaled_problem, constraint_rescaling, variable_rescaling)
    """
    K = problem.constraint_matrix
    variable_rescaling = safe_rescaling(torch.sqrt(torch.sqrt(abs_power_sum(K, 2.0, dim=0))))
    constraint_rescaling = safe_rescaling(torch.sqrt(torch.sqrt(abs_power_sum(K, 2.0, dim=1))))
    return apply_rescaling(problem, constraint_rescaling, variable_rescaling), constraint_rescaling, variable_rescaling


def pock_chambolle_rescaling(problem: LinearProgrammingProblem, alpha: float = 1.0) -> tuple:
    """
    Pock-Chambolle rescaling (matching cuPDLP.jl default with alpha=1.0).

    Rescales the constraint matrix such that its operator norm is <= 1.

    Each column j is divided by sqrt(sum_i |K[i,j]|^(2-alpha))
    Each row i is divided by sqrt(sum_j |K[i,j]|^alpha)

    Returns:
        Tuple of (scaled_problem, constraint_rescaling, variable_rescaling)
    """
    assert 0 <= alpha <= 2, f"alpha must be in [0, 2], got {alpha}"

    K = problem.constraint_matrix
    variable_rescaling = safe_rescaling(torch.sqrt(abs_power_sum(K, 2 - alpha, dim=0)))
    constraint_rescaling = safe_rescaling(torch.sqrt(abs_power_sum(K, alpha, dim=1)))
    return apply_rescaling(problem, constraint_rescaling, variable_rescaling), constraint_rescaling, variable_rescaling


def rescale_problem(
    problem: LinearProgrammingProblem,
    l_inf_ruiz_iterations: int = 10,
    l2_norm_rescaling_flag: bool = False,
    pock_chambolle_alpha: float | None = 1.0,
) -> ScaledProblem:
    """
    Full rescaling pipeline.

    1. Ruiz rescaling (`l_inf_ruiz_iterations` passes, L-infinity)
    2. L2-norm rescaling (if `l2_norm_rescaling_flag`)
    3. Pock-Chambolle rescaling (if `pock_chambolle_alpha` is not None and > 0)

    With everything disabled the scaled problem is the input problem and both
    rescaling vectors are all ones. The input problem is never modified.
    """
    dtype, device = problem.objective_vector.dtype, problem.objective_vector.device
    constraint_rescaling = torch.ones(problem.num_constraints, device=device, dtype=dtype)
    variable_rescaling = torch.ones(problem.num_variables, device=device, dtype=dtype)
    scaled = problem

    # Step 1: Ruiz rescaling (if enabled)
    if l_inf_ruiz_iterations > 0:
        scaled, con_rescale, var_rescale = ruiz_rescaling(scaled, num_iterations=l_inf_ruiz_iterations)
        constraint_rescaling = constraint_rescaling * con_rescale
        variable_rescaling = variable_rescaling * var_rescale

    # Step 2: L2-norm rescaling (if enabled)
    if l2_norm_rescaling_flag:
        scaled, con_rescale, var_rescale = l2_norm_rescaling(scaled)
        constraint_rescaling = constraint_rescaling * con_rescale
        variable_rescaling = variable_rescaling * var_rescale

    # Step 3: Pock-Chambolle rescaling (if alpha provided and not zero)
    if pock_chambolle_alpha is not None and pock_chambolle_alpha > 0:
        scaled, con_rescale, var_rescale = pock_chambolle_rescaling(scaled, alpha=pock_chambolle_alpha)
        constraint_rescaling = constraint_rescaling * con_rescale
        variable_rescaling = variable_rescaling * var_rescale

    if scaled is not problem:
        logger.debug(
            "Rescaled problem: Ruiz iters=%d, l2=%s, Pock-Chambolle alpha=%s, max constraint rescaling=%.3e, max variable rescaling=%.3e",
            l_inf_ruiz_iterations, l2_norm_rescaling_flag, pock_chambolle_alpha,
            constraint_rescaling.max().item() if constraint_rescaling.numel() else 1.0,
            variable_rescaling.max().item() if variable_rescaling.numel() else 1.0,
        )

    return ScaledProblem(
        original_problem=problem,
        scaled_problem=scaled,
        constraint_rescaling=constraint_rescaling,
        variable_rescaling=variable_rescaling,
    )


def scale_solution(
    primal_solution: torch.Tensor,
    dual_solution: torch.Tensor,
    variable_rescaling: torch.Tensor,
    constraint_rescaling: torch.Tensor,
) -> tuple:
    """Map an original-space solution into the rescaled space (inverse of `unscale_solution`)."""
    return primal_solution * variable_rescaling, dual_solution * constraint_rescaling


def unscale_solution(
    primal_solution: torch.Tensor,
    dual_solution: torch.Tensor,
    variable_rescaling: torch.Tensor,
    constraint_rescaling: torch.Tensor,
) -> tuple:
    """
    Unscale the solution from the rescaled problem back to original space.

    Args:
        primal_solution: (n,) primal variables from rescaled problem
        dual_solution: (m,) dual variables from rescaled problem
        variable_rescaling: (n,) variable scaling factors
        constraint_rescaling: (m,) constraint scaling factors

    Returns:
        Tuple of (original_primal, original_dual)
    """
    # x_original = x_scaled / variable_rescaling (matching cuPDLP.jl)
    original_primal = primal_solution / variable_rescaling

    # y_original = y_scaled / constraint_rescaling
    original_dual = dual_solution / constraint_rescaling

    return original_primal, original_dual
