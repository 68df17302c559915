import torch

from iteration_stats import evaluate_unscaled_iteration_stats
from lp_problem import LinearProgrammingProblem
from pdhg import Iterate, OptimizerParameters, optimize, take_pdhg_step
from preprocess import abs_power_sum, apply_rescaling, col_max, rescale_problem, row_max

torch.set_default_dtype(torch.float64)


def bounded_problem(n=10, m1=5, m2=3, density=1.0, seed=42, sparse=False):
    torch.manual_seed(seed)
    G = torch.randn(m1, n) * (torch.rand(m1, n) < density)
    A = torch.randn(m2, n) * (torch.rand(m2, n) < density)
    c = torch.randn(n)
    h = torch.randn(m1)
    b = torch.randn(m2)
    l = torch.full((n,), -10.0)
    u = torch.full((n,), 10.0)
    if sparse:
        G, A = G.to_sparse_coo(), A.to_sparse_coo()
    return LinearProgrammingProblem.from_blocks(c, G, h, A, b, l, u)


# ============================================================================
# Helper function tests
# ============================================================================

def test_col_max():
    """Test column-wise max on both dense and sparse matrices"""
    torch.manual_seed(42)

    K_dense = torch.randn(100, 50)
    assert torch.allclose(col_max(K_dense.to_sparse_coo()), K_dense.abs().max(dim=0)[0])

    # Actually sparse matrix (10% density) with empty columns
    K_dense = torch.randn(100, 50) * (torch.rand(100, 50) < 0.1)
    K_dense[:, 10:15] = 0
    result_sparse = col_max(K_dense.to_sparse_coo())
    assert torch.allclose(result_sparse, col_max(K_dense))
    assert result_sparse[10:15].abs().max() == 0.0, "Empty columns should have 0 max"


def test_row_max():
    """Test row-wise max on both dense and sparse matrices"""
    torch.manual_seed(123)

    K_dense = torch.randn(100, 50) * (torch.rand(100, 50) < 0.1)
    K_dense[20:25, :] = 0
    result_sparse = row_max(K_dense.to_sparse_coo())
    assert torch.allclose(result_sparse, row_max(K_dense))
    assert result_sparse[20:25].abs().max() == 0.0, "Empty rows should have 0 max"


def test_abs_power_sum():
    torch.manual_seed(7)
    K_dense = torch.randn(40, 30) * (torch.rand(40, 30) < 0.2)
    K_sparse = K_dense.to_sparse_coo()
    for p in [1.0, 2.0, 0.5]:
        for dim in [0, 1]:
            assert torch.allclose(abs_power_sum(K_sparse, p, dim), abs_power_sum(K_dense, p, dim))


def test_apply_rescaling_sparse():
    """K * (1/r) * (1/s) on sparse equals K / r / s on dense"""
    torch.manual_seed(789)
    dense = bounded_problem(density=0.3, seed=789)
    sparse = bounded_problem(density=0.3, seed=789, sparse=True)
    r = torch.rand(dense.num_constraints) + 0.5
    s = torch.rand(dense.num_variables) + 0.5

    scaled_dense = apply_rescaling(dense, r, s)
    scaled_sparse = apply_rescaling(sparse, r, s)

    assert scaled_sparse.is_sparse
    assert torch.allclose(scaled_sparse.constraint_matrix.to_dense(), scaled_dense.constraint_matrix)
    assert torch.allclose(scaled_sparse.objective_vector, scaled_dense.objective_vector)


def test_operations_stay_sparse():
    """Rescaling must not silently densify the constraint matrix"""
    torch.manual_seed(999)
    K_dense = torch.randn(1000, 500) * (torch.rand(1000, 500) < 0.01)
    problem = LinearProgrammingProblem(
        objective_vector=torch.randn(500),
        constraint_matrix=K_dense.to_sparse_coo(),
        right_hand_side=torch.randn(1000),
        num_equalities=100,
        variable_lower_bound=torch.zeros(500),
        variable_upper_bound=torch.full((500,), float('inf')),
    )
    initial_nnz = problem.nnz()

    scaled = rescale_problem(problem, l2_norm_rescaling_flag=True).scaled_problem

    assert scaled.is_sparse
    assert scaled.nnz() == initial_nnz
    assert initial_nnz < 1000 * 500 * 0.1, "Should be much smaller than dense"


# ============================================================================
# Integration tests
# ============================================================================

def test_step_dense_vs_sparse():
    dense = bounded_problem()
    sparse = bounded_problem(sparse=True)
    torch.manual_seed(5)
    iterate = Iterate(torch.randn(dense.num_variables), torch.randn(dense.num_constraints))

    step_dense = take_pdhg_step(dense, iterate, 0.1)
    step_sparse = take_pdhg_step(sparse, iterate, 0.1)

    assert torch.allclose(step_dense.primal, step_sparse.primal)
    assert torch.allclose(step_dense.dual, step_sparse.dual)


def test_stats_dense_vs_sparse():
    dense = rescale_problem(bounded_problem())
    sparse = rescale_problem(bounded_problem(sparse=True))
    torch.manual_seed(6)
    x = torch.randn(dense.original_problem.num_variables)
    y = torch.randn(dense.original_problem.num_constraints)

    stats_dense = evaluate_unscaled_iteration_stats(dense, 0, 0.0, 0.0, x, y, x, y)
    stats_sparse = evaluate_unscaled_iteration_stats(sparse, 0, 0.0, 0.0, x, y, x, y)

    assert abs(stats_dense.kkt_error - stats_sparse.kkt_error) <= 1e-9 * max(1.0, stats_dense.kkt_error)


def test_dense_vs_sparse_equivalence():
    """Test that sparse and dense give the same iterates"""
    params = OptimizerParameters(step_size=0.5, record_every=10, iteration_limit=200, kkt_tolerance=1e-300)
    output_dense = optimize(params, bounded_problem())
    output_sparse = optimize(params, bounded_problem(sparse=True))

    assert output_dense.status == output_sparse.status
    assert torch.allclose(output_dense.primal_solution, output_sparse.primal_solution, atol=1e-6)
    assert torch.allclose(output_dense.dual_solution, output_sparse.dual_solution, atol=1e-6)
    assert output_dense.iteration_stats.column("iteration") == output_sparse.iteration_stats.column("iteration")


def test_edge_case_no_inequalities():
    """Test with no inequality constraints (m1=0)"""
    problem = bounded_problem(m1=0, m2=5, sparse=True, seed=456)
    output = optimize(OptimizerParameters(iteration_limit=50), problem)

    assert problem.num_inequalities == 0
    assert output.primal_solution.shape == (10,)
    assert output.dual_solution.shape == (5,)


def test_edge_case_no_equalities():
    """Test with no equality constraints (m2=0)"""
    problem = bounded_problem(m1=5, m2=0, sparse=True, seed=789)
    output = optimize(OptimizerParameters(iteration_limit=50), problem)

    assert problem.num_equalities == 0
    assert torch.all(output.dual_solution >= 0)
