"""
Primal-dual hybrid gradient (PDHG) solver for standard-form linear programs.

Problem formulation:
    minimize    c^T x
    subject to  K[:num_equalities] x  = q[:num_equalities]
                K[num_equalities:] x >= q[num_equalities:]
                l <= x <= u

We use notation from Chambolle and Pock, "On the ergodic convergence rates of a
first-order primal-dual algorithm". Their Theorem 1 analyzes PDHG applied to the
saddle point problem
    min_x max_y  L(x, y) = c^T x - y^T K x + q^T y
with x restricted to the box [l, u] and y[num_equalities:] >= 0. The same step
size is used for the primal and the dual update, and the iteration converges if
    step_size^2 * ||K||_2^2 < 1.
"""

import enum
import logging
import math
import time
from dataclasses import dataclass
from typing import NamedTuple

import torch

from iteration_stats import (
    KKT_PASSES_PER_TERMINATION_EVALUATION,
    IterationStatsTable,
    evaluate_unscaled_iteration_stats,
    format_iteration_stats,
    iteration_stats_heading,
)
from lp_problem import LinearProgrammingProblem
from preprocess import rescale_problem, scale_solution, unscale_solution

logger = logging.getLogger(__name__)

# safety factor keeping step_size * ||K|| strictly below 1
STEP_SIZE_SAFETY_FACTOR = 0.99


class SolutionStatus(enum.Enum):
    """How the solve terminated."""

    OPTIMAL = "optimal"
    ITERATION_LIMIT = "iteration_limit"


@dataclass
class OptimizerParameters:
    """
    Parameters of the PDHG solver.

    Attributes:
        step_size: Constant step size. If None, the solver computes a provably
            convergent one from the spectral norm of the scaled constraint matrix.
        rescale_flag: If True the problem is rescaled before solving.
        record_every: Iteration stats are recorded every `record_every` iterations.
        print_every: With `verbosity`, every `print_every`-th recorded row is logged.
        verbosity: Log iteration stats to the diagnostic logger.
        iteration_limit: Number of PDHG iterations after which the solve stops.
        kkt_tolerance: The solve stops as optimal once kkt_error <= kkt_tolerance.
        initial_primal_solution: Starting primal point in original coordinates (None = zeros).
        initial_dual_solution: Starting dual point in original coordinates (None = zeros).
        l_inf_ruiz_iterations: Ruiz passes used when rescaling.
        l2_norm_rescaling: Apply the L2-norm pass after Ruiz when rescaling.
        pock_chambolle_alpha: Pock-Chambolle exponent used when rescaling (None disables).
    """

    step_size: float | None = None
    rescale_flag: bool = True
    record_every: int = 5
    print_every: int = 20
    verbosity: bool = False
    iteration_limit: int = 20000
    kkt_tolerance: float = 1e-6
    initial_primal_solution: torch.Tensor | None = None
    initial_dual_solution: torch.Tensor | None = None
    l_inf_ruiz_iterations: int = 10
    l2_norm_rescaling: bool = True
    pock_chambolle_alpha: float | None = 1.0

    def __post_init__(self):
        assert self.step_size is None or self.step_size > 0, f"step_size must be positive, got {self.step_size}"
        assert self.record_every > 0 and self.print_every > 0
        assert self.iteration_limit >= 0, f"iteration_limit must be nonnegative, got {self.iteration_limit}"
        assert self.kkt_tolerance > 0, f"kkt_tolerance must be positive, got {self.kkt_tolerance}"


class Iterate(NamedTuple):
    primal: torch.Tensor
    dual: torch.Tensor


@dataclass(frozen=True, eq=False)
class PrimalDualOutput:
    """Result of a solve; solutions are in the original coordinate system."""

    primal_solution: torch.Tensor
    dual_solution: torch.Tensor
    iteration_stats: IterationStatsTable
    status: SolutionStatus


# -----------------------------
# Projections and PDHG step
# -----------------------------
def projection_primal(x: torch.Tensor, problem: LinearProgrammingProblem) -> torch.Tensor:
    """Project x onto the box [l, u]."""
    return torch.clamp(x, problem.variable_lower_bound, problem.variable_upper_bound)


def projection_dual(y: torch.Tensor, problem: LinearProgrammingProblem) -> torch.Tensor:
    """Project y onto the dual feasible set (equality duals free, inequality duals >= 0)."""
    m_eq = problem.num_equalities
    return torch.cat([y[:m_eq], torch.clamp(y[m_eq:], min=0.0)])


@torch.no_grad()
def take_pdhg_step(problem: LinearProgrammingProblem, iterate: Iterate, step_size: float) -> Iterate:
    """One PDHG step; the dual update uses the extrapolated primal point 2 x' - x."""
    c, K, q = problem.objective_vector, problem.constraint_matrix, problem.right_hand_side
    x, y = iterate
    next_primal = projection_primal(x - step_size * (c - K.T @ y), problem)
    next_dual = projection_dual(y - step_size * (K @ (2.0 * next_primal - x) - q), problem)
    return Iterate(next_primal, next_dual)


# -----------------------------
# Step size
# -----------------------------
@torch.no_grad()
def estimate_spectral_norm(K: torch.Tensor, num_iters: int = 100, seed: int = 0) -> torch.Tensor:
    """
    Largest singular value of K.

    Exact for dense matrices. Sparse matrices use power iteration on K^T K,
    which approaches the norm from below. A matrix with non-finite entries has
    norm nan.
    """
    dtype, device = K.dtype, K.device
    if K.shape[0] == 0 or K.shape[1] == 0:
        return torch.tensor(0.0, dtype=dtype, device=device)
    values = K.coalesce().values() if K.is_sparse else K
    if not torch.isfinite(values).all():
        return torch.tensor(float('nan'), dtype=dtype, device=device)
    if not K.is_sparse:
        return torch.linalg.matrix_norm(K, ord=2)

    generator = torch.Generator(device=device).manual_seed(seed)
    v = torch.randn(K.shape[1], generator=generator, dtype=dtype, device=device)
    v = v / torch.linalg.norm(v)
    for _ in range(num_iters):
        w = K.T @ (K @ v)
        w_norm = torch.linalg.norm(w)
        if w_norm == 0:
            return w_norm
        v = w / w_norm
    return torch.linalg.norm(K @ v)


def select_step_size(problem: LinearProgrammingProblem, step_size: float | None = None) -> float:
    """
    Returns the user step size if given, otherwise 0.99 / ||K||_2, which satisfies
    step_size^2 * ||K||_2^2 < 1 (Theorem 1).
    """
    if step_size is not None:
        assert step_size > 0, f"step_size must be positive, got {step_size}"
        return float(step_size)
    norm = estimate_spectral_norm(problem.constraint_matrix)
    step_size = (STEP_SIZE_SAFETY_FACTOR / norm).item()
    if not math.isfinite(step_size):
        logger.warning("Constraint matrix has norm %s, step size %s is not finite", norm.item(), step_size)
    return step_size


# -----------------------------
# Main loop
# -----------------------------
@torch.no_grad()
def optimize(
    params: OptimizerParameters,
    problem: LinearProgrammingProblem,
    diagnostic_logger: logging.Logger | None = None,
) -> PrimalDualOutput:
    """
    Solve a linear program with PDHG.

    Args:
        params: Solver parameters.
        problem: The LP to solve.
        diagnostic_logger: Receives the iteration stats heading and rows (INFO level)
            when `params.verbosity` is set. Defaults to this module's logger.

    Returns:
        PrimalDualOutput with original-space solutions, the recorded iteration
        stats and SolutionStatus.OPTIMAL or SolutionStatus.ITERATION_LIMIT.
    """
    sink = diagnostic_logger if diagnostic_logger is not None else logger

    if params.rescale_flag:
        scaled_problem = rescale_problem(
            problem,
            l_inf_ruiz_iterations=params.l_inf_ruiz_iterations,
            l2_norm_rescaling_flag=params.l2_norm_rescaling,
            pock_chambolle_alpha=params.pock_chambolle_alpha,
        )
    else:
        scaled_problem = rescale_problem(
            problem, l_inf_ruiz_iterations=0, l2_norm_rescaling_flag=False, pock_chambolle_alpha=None,
        )
    scaled_lp = scaled_problem.scaled_problem

    step_size = select_step_size(scaled_lp, params.step_size)
    logger.debug("Using step size %.6e", step_size)

    c = problem.objective_vector
    primal_size, dual_size = problem.num_variables, problem.num_constraints
    x0 = params.initial_primal_solution
    y0 = params.initial_dual_solution
    x0 = torch.zeros(primal_size, device=c.device, dtype=c.dtype) if x0 is None else x0
    y0 = torch.zeros(dual_size, device=c.device, dtype=c.dtype) if y0 is None else y0
    assert x0.shape == (primal_size,), f"initial_primal_solution must have shape ({primal_size},), got {tuple(x0.shape)}"
    assert y0.shape == (dual_size,), f"initial_dual_solution must have shape ({dual_size},), got {tuple(y0.shape)}"

    iterate = Iterate(*scale_solution(x0, y0, scaled_problem.variable_rescaling, scaled_problem.constraint_rescaling))
    primal_delta, dual_delta = torch.zeros_like(iterate.primal), torch.zeros_like(iterate.dual)

    stats = IterationStatsTable()
    iteration = 0
    cumulative_kkt_passes = 0.0
    if params.verbosity:
        sink.info(iteration_stats_heading())

    start_time = time.time()
    while True:
        terminate_by_limit = iteration >= params.iteration_limit
        terminate_by_tolerance = False

        store_stats = iteration % params.record_every == 0 or terminate_by_limit
        print_stats = params.verbosity and (
            iteration % (params.record_every * params.print_every) == 0 or terminate_by_limit
        )

        if store_stats:
            this_iteration_stats = evaluate_unscaled_iteration_stats(
                scaled_problem,
                iteration,
                cumulative_kkt_passes,
                time.time() - start_time,
                iterate.primal,
                iterate.dual,
                primal_delta,
                dual_delta,
            )
            stats.append(this_iteration_stats)
            terminate_by_tolerance = this_iteration_stats.kkt_error <= params.kkt_tolerance

            if print_stats:
                sink.info(format_iteration_stats(this_iteration_stats))

        if terminate_by_tolerance or terminate_by_limit:
            status = SolutionStatus.OPTIMAL if terminate_by_tolerance else SolutionStatus.ITERATION_LIMIT
            if status == SolutionStatus.OPTIMAL:
                logger.debug("Found optimal solution after %d iterations", iteration)
            else:
                logger.debug("Iteration limit reached after %d iterations", iteration)
            primal_solution, dual_solution = unscale_solution(
                iterate.primal, iterate.dual,
                scaled_problem.variable_rescaling, scaled_problem.constraint_rescaling,
            )
            return PrimalDualOutput(primal_solution, dual_solution, stats, status)

        iteration += 1
        next_iterate = take_pdhg_step(scaled_lp, iterate, step_size)
        cumulative_kkt_passes += KKT_PASSES_PER_TERMINATION_EVALUATION

        primal_delta = next_iterate.primal - iterate.primal
        dual_delta = next_iterate.dual - iterate.dual
        iterate = next_iterate


def solve(
    problem: LinearProgrammingProblem,
    iteration_limit: int,
    kkt_tolerance: float,
    initial_primal_solution: torch.Tensor | None = None,
    initial_dual_solution: torch.Tensor | None = None,
    diagnostic_logger: logging.Logger | None = None,
) -> PrimalDualOutput:
    """
    Solve with the default configuration: automatic step size, rescaling,
    stats recorded every 5 iterations and logged every 100.
    """
    sink = diagnostic_logger if diagnostic_logger is not None else logger
    sink.info(
        "solving problem with: rows = %d, cols = %d, nnz = %d.",
        problem.num_constraints, problem.num_variables, problem.nnz(),
    )
    params = OptimizerParameters(
        step_size=None,
        rescale_flag=True,
        record_every=5,
        print_every=20,
        verbosity=True,
        iteration_limit=iteration_limit,
        kkt_tolerance=kkt_tolerance,
        initial_primal_solution=initial_primal_solution,
        initial_dual_solution=initial_dual_solution,
    )
    return optimize(params, problem, diagnostic_logger=diagnostic_logger)
