"""
KKT diagnostics for PDHG iterates.

Residuals, objectives and the KKT error are always measured on the original
(unscaled) problem, so runs with and without rescaling report comparable values.
"""

from typing import Iterator, NamedTuple

import torch

from lp_problem import LinearProgrammingProblem
from preprocess import ScaledProblem, unscale_solution

# One primal-direction (K x) and one dual-direction (K^T y) matrix pass.
KKT_PASSES_PER_TERMINATION_EVALUATION = 2.0


class IterationStats(NamedTuple):
    """One recorded row of solver diagnostics."""

    iteration: int
    cumulative_kkt_passes: float
    elapsed_time: float
    kkt_error: float
    primal_objective: float
    dual_objective: float
    gap: float
    l2_primal_residual: float
    l2_dual_residual: float
    primal_delta_norm: float
    dual_delta_norm: float


class IterationStatsTable:
    """Append-only sequence of `IterationStats`, ordered by iteration."""

    def __init__(self):
        self._rows: list[IterationStats] = []

    def append(self, stats: IterationStats) -> None:
        assert not self._rows or stats.iteration >= self._rows[-1].iteration, "iteration stats must be appended in iteration order"
        self._rows.append(stats)

    def column(self, name: str) -> list:
        return [getattr(row, name) for row in self._rows]

    @property
    def last(self) -> IterationStats | None:
        return self._rows[-1] if self._rows else None

    def __len__(self) -> int:
        return len(self._rows)

    def __iter__(self) -> Iterator[IterationStats]:
        return iter(self._rows)

    def __getitem__(self, index: int) -> IterationStats:
        return self._rows[index]

    def __repr__(self) -> str:
        return f"IterationStatsTable({len(self._rows)} rows)"


def sum_finite_products(values: torch.Tensor, multipliers: torch.Tensor) -> torch.Tensor:
    """Sum values[i] * multipliers[i] where values[i] is finite (not inf)."""
    finite = torch.isfinite(values)
    return (values[finite] * multipliers[finite]).sum() if finite.any() else torch.tensor(0.0, device=values.device, dtype=values.dtype)


def compute_bound_multipliers(reduced_costs: torch.Tensor, lower: torch.Tensor, upper: torch.Tensor) -> torch.Tensor:
    """
    Part of the reduced costs that finite bounds can absorb.

    A positive reduced cost is supported by a finite lower bound, a negative one
    by a finite upper bound. Whatever is left over is dual infeasibility.
    """
    max_lam = torch.where(torch.isfinite(lower), torch.full_like(reduced_costs, float('inf')), torch.zeros_like(reduced_costs))
    min_lam = torch.where(torch.isfinite(upper), torch.full_like(reduced_costs, float('-inf')), torch.zeros_like(reduced_costs))
    return torch.clamp(reduced_costs, min_lam, max_lam)


@torch.no_grad()
def primal_residual(problem: LinearProgrammingProblem, x: torch.Tensor) -> torch.Tensor:
    """q - K x on equality rows, max(q - K x, 0) on inequality rows."""
    r = problem.right_hand_side - (problem.constraint_matrix @ x)
    m_eq = problem.num_equalities
    return torch.cat([r[:m_eq], torch.clamp(r[m_eq:], min=0.0)])


@torch.no_grad()
def dual_residual_and_objective(problem: LinearProgrammingProblem, y: torch.Tensor) -> tuple:
    """Returns (dual residual vector, dual objective) for the dual iterate y."""
    g = problem.objective_vector - (problem.constraint_matrix.T @ y)
    lam = compute_bound_multipliers(g, problem.variable_lower_bound, problem.variable_upper_bound)
    lam_pos = torch.clamp(lam, min=0.0)
    lam_neg = torch.clamp(-lam, min=0.0)

    l_term = sum_finite_products(problem.variable_lower_bound, lam_pos)
    u_term = sum_finite_products(problem.variable_upper_bound, lam_neg)
    dual_obj = problem.right_hand_side @ y + l_term - u_term

    # inequality duals must be nonnegative
    sign_violation = torch.clamp(-y[problem.num_equalities:], min=0.0)
    return torch.cat([g - lam, sign_violation]), dual_obj


@torch.no_grad()
def evaluate_unscaled_iteration_stats(
    scaled_problem: ScaledProblem,
    iteration: int,
    cumulative_kkt_passes: float,
    elapsed_time: float,
    current_primal_solution: torch.Tensor,
    current_dual_solution: torch.Tensor,
    primal_delta: torch.Tensor,
    dual_delta: torch.Tensor,
) -> IterationStats:
    """
    Computes diagnostics of a scaled iterate on the original problem.

    kkt_error = sqrt(||primal residual||^2 + ||dual residual||^2 + gap^2)
    """
    problem = scaled_problem.original_problem
    x, y = unscale_solution(
        current_primal_solution, current_dual_solution,
        scaled_problem.variable_rescaling, scaled_problem.constraint_rescaling,
    )
    dx, dy = unscale_solution(
        primal_delta, dual_delta,
        scaled_problem.variable_rescaling, scaled_problem.constraint_rescaling,
    )

    r_primal = primal_residual(problem, x)
    r_dual, dual_obj = dual_residual_and_objective(problem, y)
    primal_obj = problem.objective_vector @ x
    gap = primal_obj - dual_obj

    kkt_error = torch.sqrt((r_primal @ r_primal) + (r_dual @ r_dual) + gap * gap)

    return IterationStats(
        iteration=iteration,
        cumulative_kkt_passes=cumulative_kkt_passes,
        elapsed_time=elapsed_time,
        kkt_error=kkt_error.item(),
        primal_objective=primal_obj.item(),
        dual_objective=dual_obj.item(),
        gap=gap.item(),
        l2_primal_residual=torch.linalg.norm(r_primal).item(),
        l2_dual_residual=torch.linalg.norm(r_dual).item(),
        primal_delta_norm=torch.linalg.norm(dx).item(),
        dual_delta_norm=torch.linalg.norm(dy).item(),
    )


def iteration_stats_heading() -> str:
    return (
        f"{'iter':>7s} {'kkt passes':>11s} {'time (s)':>9s} {'kkt error':>10s} "
        f"{'primal obj':>13s} {'dual obj':>13s} {'gap':>10s} {'pres':>10s} {'dres':>10s}"
    )


def format_iteration_stats(stats: IterationStats) -> str:
    return (
        f"{stats.iteration:7d} {stats.cumulative_kkt_passes:11.1f} {stats.elapsed_time:9.3f} "
        f"{stats.kkt_error:10.3e} {stats.primal_objective:+13.6e} {stats.dual_objective:+13.6e} "
        f"{stats.gap:10.3e} {stats.l2_primal_residual:10.3e} {stats.l2_dual_residual:10.3e}"
    )
