import logging

import numpy as np
import pytest

from stabroots import (
    ConfigurationError,
    RootsProblem,
    Scaling,
    SolverStatus,
    Spectrum,
    StabConfig,
    degree_info,
)
from stabroots.blocks.autodiff import Differentiable, lagrangian_hessian
from stabroots.blocks.stab import max_violation


# ---------------------------------------------------------------------------
# Degree descriptor
# ---------------------------------------------------------------------------
@pytest.mark.parametrize(
    "stages, order, degree, odd, n_roots",
    [(5, 1, 5, True, 2), (4, 1, 4, False, 2), (3, 3, 1, True, 0), (6, 2, 5, True, 2), (3, 1, 3, True, 1)],
)
def test_degree_info(stages, order, degree, odd, n_roots):
    info = degree_info(stages, order, 2, 0.1, False)
    assert (info.degree, info.odd_degree, info.n_roots) == (degree, odd, n_roots)
    assert info.dt_exp == pytest.approx(0.1 * stages / 2)
    assert info.i_min is None


@pytest.mark.parametrize(
    "args, match",
    [
        ((1, 2, 1, 0.1), "i_min"),
        ((1, 3, 1, 0.1), "exceeds"),
        ((0, 1, 1, 0.1), "num_stages"),
        ((3, 1, 0, 0.1), "num_stages_ref"),
        ((3, 1, 1, 0.0), "dt_ref"),
        ((3, 1, 1, np.inf), "dt_ref"),
    ],
)
def test_degree_info_rejects(args, match):
    with pytest.raises(ConfigurationError, match=match):
        degree_info(*args, use_hull=False)


# ---------------------------------------------------------------------------
# Problem setup
# ---------------------------------------------------------------------------
def test_even_degree_seed_is_root_nearest_origin(circle_spectrum):
    p = RootsProblem(4, 1, 2, 0.2, circle_spectrum)
    assert p.info.i_min == 1
    assert p.evaluator.seed == 1
    assert abs(p.x0[1]) < abs(p.x0[0])


def test_odd_degree_has_no_seed(circle_spectrum):
    p = RootsProblem(5, 1, 2, 0.2, circle_spectrum)
    assert p.info.i_min is None and p.evaluator.seed is None
    assert p.n == 3 and p.m == len(circle_spectrum)


@pytest.mark.parametrize("scaling", ["reference", "root"])
def test_bounds_keep_roots_left_of_origin(circle_spectrum, scaling):
    cfg = StabConfig(scaling=scaling)
    p = RootsProblem(5, 1, 2, 0.2, circle_spectrum, cfg=cfg)
    x_l, x_u, g_l, g_u = p.get_bounds_info()
    N = p.n_roots
    assert np.all(x_u[:N] < 0.0)
    assert np.all(x_l[:N] == p.source.keys[0])
    assert np.all(g_l == -np.inf) and np.all(g_u == 1.0)
    assert x_u[N] == np.inf
    # default lower step bound is 1e-6 * dt_ref
    assert p.step_size(x_l) == pytest.approx(1e-6 * 0.2)


def test_reference_scaling_prescales_spectrum(circle_spectrum):
    p = RootsProblem(5, 1, 2, 0.2, circle_spectrum)
    np.testing.assert_allclose(p.spectrum.real, circle_spectrum.real * 0.2)
    q = RootsProblem(5, 1, 2, 0.2, circle_spectrum, cfg=StabConfig(scaling="root"))
    assert q.spectrum is circle_spectrum


def test_step_size_mapping(circle_spectrum):
    ref = RootsProblem(5, 1, 2, 0.2, circle_spectrum)
    x = ref.x0.copy()
    x[-1] = ref.info.dt_exp
    assert ref.step_size(x) == pytest.approx(0.2)
    root = RootsProblem(5, 1, 2, 0.2, circle_spectrum, cfg=StabConfig(scaling=Scaling.ROOT))
    x[-1] = 0.37
    assert root.step_size(x) == 0.37


def test_step_bounds_follow_config(circle_spectrum):
    cfg = StabConfig(min_step=0.01, max_step=0.3)
    p = RootsProblem(5, 1, 2, 0.2, circle_spectrum, cfg=cfg)
    x_l, x_u, _, _ = p.get_bounds_info()
    assert p.step_size(x_l) == pytest.approx(0.01)
    assert p.step_size(x_u) == pytest.approx(0.3)


@pytest.mark.parametrize("spacing", ["geometric", "linear"])
def test_starting_point(circle_spectrum, spacing):
    p = RootsProblem(7, 1, 2, 0.2, circle_spectrum, cfg=StabConfig(root_spacing=spacing))
    sp = p.get_starting_point(init_x=True, init_z=True, init_lambda=True)
    N = p.n_roots
    assert N == 3
    assert np.all(sp.x[:N] > p.x_l[:N]) and np.all(sp.x[:N] < p.x_u[:N])
    assert np.all(np.diff(sp.x[:N]) > 0.0)
    assert sp.x[N] == pytest.approx(0.5 * p.info.dt_exp)
    assert sp.z_L.shape == (p.n,) and sp.lam.shape == (p.m,)
    if spacing == "linear":
        np.testing.assert_allclose(np.diff(sp.x[:N]), np.diff(sp.x[:N])[0])
    assert p.get_starting_point(init_x=False).x is None


def test_hull_drives_root_interval(circle_spectrum, circle_hull):
    p = RootsProblem(5, 1, 2, 1.0, circle_spectrum, hull=circle_hull)
    assert p.info.use_hull
    assert p.x_l[0] == pytest.approx(circle_hull.real[0])
    assert p.m == len(circle_spectrum)


@pytest.mark.parametrize("scaling", ["reference", "root"])
def test_hull_mode_matches_polynomial(circle_spectrum, circle_hull, scaling):
    """Hull supplies the root imaginary parts; constraints stay on the spectrum."""
    cfg = StabConfig(scaling=scaling)
    p = RootsProblem(3, 1, 1, 1.0, circle_spectrum, hull=circle_hull, cfg=cfg)
    x0 = 0.5 * (circle_hull.real[4] + circle_hull.real[5])
    s = 0.4
    x = np.array([x0, s])

    b = np.interp(x0, circle_hull.real, circle_hull.imag)
    z = circle_spectrum.real + 1j * circle_spectrum.imag
    if scaling == "root":
        r = s * (x0 + 1j * b)
        z = z * s
    else:
        r = x0 + 1j * b
        z = z / p.info.dt_exp * s
    expected = np.abs(1.0 + z * (1.0 - z / r) * (1.0 - z / np.conj(r)))

    g = p.eval_g(x)
    assert g.shape == (len(circle_spectrum),)
    np.testing.assert_allclose(g, expected, rtol=1e-12)

    direct = RootsProblem(3, 1, 1, 1.0, circle_spectrum, cfg=cfg)
    assert not np.allclose(direct.eval_g(x), g)


@pytest.mark.parametrize(
    "kwargs, match",
    [
        (dict(cfg=StabConfig(scaling="bogus")), "scaling"),
        (dict(cfg=StabConfig(root_spacing="cubic")), "root_spacing"),
        (dict(cfg=StabConfig(real_margin=-1.0)), "real_margin"),
        (dict(cfg=StabConfig(scale_start=0.0)), "scale_start"),
        (dict(cfg=StabConfig(min_step=0.5, max_step=0.1)), "max_step"),
        (dict(hull=Spectrum([-1.0], [1.0])), "at least two"),
    ],
)
def test_configuration_errors(circle_spectrum, kwargs, match):
    with pytest.raises(ConfigurationError, match=match):
        RootsProblem(5, 1, 2, 0.2, circle_spectrum, **kwargs)


def test_spectrum_without_left_half_plane_extent():
    spec = Spectrum([0.5, 1.0], [1.0, 1.0])
    with pytest.raises(ConfigurationError, match="root interval"):
        RootsProblem(5, 1, 1, 1.0, spec)


def test_single_point_spectrum_only_without_roots():
    spec = Spectrum([-1.0], [0.5])
    with pytest.raises(ConfigurationError):
        RootsProblem(5, 1, 1, 1.0, spec)
    p = RootsProblem(3, 3, 1, 1.0, spec)
    assert p.n == 1


# ---------------------------------------------------------------------------
# Callback set
# ---------------------------------------------------------------------------
@pytest.fixture
def problem(circle_spectrum):
    return RootsProblem(4, 1, 2, 0.2, circle_spectrum)


def test_structures_match_nlp_info(problem):
    info = problem.get_nlp_info()
    assert (info.n, info.m, info.index_style) == (3, len(problem.spectrum), "C")
    rows, cols = problem.eval_jac_g()
    assert rows.size == cols.size == info.nnz_jac_g
    hr, hc = problem.eval_h()
    assert hr.size == hc.size == info.nnz_h_lag
    assert np.all(hr >= hc)


def test_objective_callbacks(problem):
    x = problem.x0
    assert problem.eval_f(x) == -x[-1]
    np.testing.assert_array_equal(problem.eval_grad_f(x), [0.0, 0.0, -1.0])


def test_jacobian_values_follow_structure(problem):
    x = problem.x0
    J = problem.cons.jacobian(x)
    rows, cols = problem.eval_jac_g()
    vals = problem.eval_jac_g(x)
    np.testing.assert_array_equal(vals, J[rows, cols])
    np.testing.assert_array_equal(problem.jacobian_matrix(x).toarray(), J)


def test_hessian_values_follow_structure(problem):
    x = problem.x0
    lam = np.linspace(0.0, 1.0, problem.m)
    H = lagrangian_hessian(problem.obj, problem.cons, x, 2.0, lam)
    rows, cols = problem.eval_h()
    np.testing.assert_allclose(problem.eval_h(x, True, 2.0, lam), H[rows, cols], rtol=1e-12)
    full = problem.hessian_matrix(x, True, 2.0, lam).toarray()
    np.testing.assert_allclose(full, full.T)
    np.testing.assert_allclose(full[rows, cols], H[rows, cols], rtol=1e-12)


def test_values_are_reused_until_x_changes(problem):
    x = problem.x0
    g = problem.eval_g(x)

    def boom(_):
        raise RuntimeError("constraints re-evaluated")

    problem.cons = Differentiable(boom, problem.cons.twin)
    np.testing.assert_array_equal(problem.eval_g(x, new_x=False), g)
    with pytest.raises(RuntimeError):
        problem.eval_g(x, new_x=True)


def test_reuse_can_be_disabled(circle_spectrum):
    p = RootsProblem(4, 1, 2, 0.2, circle_spectrum, cfg=StabConfig(reuse_values=False))
    p.eval_g(p.x0)

    def boom(_):
        raise RuntimeError("constraints re-evaluated")

    p.cons = Differentiable(boom, p.cons.twin)
    with pytest.raises(RuntimeError):
        p.eval_g(p.x0, new_x=False)


def test_returned_values_are_copies(problem):
    x = problem.x0
    g = problem.eval_g(x)
    g[:] = -1.0
    assert np.all(problem.eval_g(x, new_x=False) >= 0.0)


def test_vanishing_seed_root_is_reported(problem, caplog):
    x = problem.x0.copy()
    x[problem.info.i_min] = 0.0
    with caplog.at_level(logging.WARNING):
        g = problem.eval_g(x)
    assert not np.isfinite(g).all()
    assert "non-finite" in caplog.text


def test_wrong_length_rejected(problem):
    with pytest.raises(ValueError, match="length"):
        problem.eval_g([0.1, 0.2])


# ---------------------------------------------------------------------------
# Monitor and finalization
# ---------------------------------------------------------------------------
def _iterate(problem, it, x, inf_pr):
    return problem.intermediate_callback("test", it, -x[-1], inf_pr, 0.0, x=x)


def test_non_converged_run_reports_best_iterate(problem):
    good = problem.x0.copy()
    good[-1] = 0.4
    bad = problem.x0.copy()
    bad[-1] = 0.9
    assert _iterate(problem, 1, good, 0.0)
    assert _iterate(problem, 2, bad, 0.3)

    ones_n, ones_m = np.ones(problem.n), np.ones(problem.m)
    sol = problem.finalize_solution(
        SolverStatus.MAXITER_EXCEEDED, bad, z_L=ones_n, z_U=ones_n, lam=ones_m
    )
    assert sol.from_snapshot
    np.testing.assert_array_equal(sol.x, good)
    np.testing.assert_allclose(sol.g, problem.evaluator(good))
    assert sol.dt == pytest.approx(problem.step_size(good))
    assert sol.obj_value == -0.4
    assert sol.iterations == 2
    # multipliers of the host point are not carried over
    np.testing.assert_array_equal(sol.lam, np.zeros(problem.m))
    np.testing.assert_array_equal(sol.z_L, np.zeros(problem.n))
    np.testing.assert_array_equal(sol.z_U, np.zeros(problem.n))
    assert problem.solution is sol


def test_converged_run_reports_host_point(problem):
    good = problem.x0.copy()
    _iterate(problem, 1, good, 0.0)
    final = good.copy()
    final[-1] = 0.3
    lam = np.linspace(0.0, 1.0, problem.m)
    sol = problem.finalize_solution("success", final, lam=lam, obj_value=-0.3)
    assert not sol.from_snapshot
    np.testing.assert_array_equal(sol.x, final)
    np.testing.assert_array_equal(sol.roots, final[:2])
    assert sol.scale == 0.3
    np.testing.assert_array_equal(sol.lam, lam)
    assert sol.z_L.shape == (problem.n,)


def test_non_converged_without_snapshot_keeps_host_point(problem):
    x = problem.x0.copy()
    sol = problem.finalize_solution("local_infeasibility", x)
    assert not sol.from_snapshot
    np.testing.assert_array_equal(sol.x, x)


@pytest.fixture
def euler_problem(circle_spectrum):
    # degree 1: feasible iff the disc |1 + z s| <= 1 covers the spectrum
    return RootsProblem(3, 3, 1, 1.0, circle_spectrum, cfg=StabConfig(scaling="root"))


def test_callback_uses_last_evaluated_point(euler_problem):
    x = np.array([0.5])
    euler_problem.eval_g(x)
    euler_problem.intermediate_callback("test", 1, -x[-1], 0.0, 0.0)
    np.testing.assert_array_equal(euler_problem.best.x, x)


def test_callback_measures_last_evaluated_point(euler_problem):
    trial = np.array([3.0])
    assert max_violation(euler_problem.eval_g(trial)) > 0.0
    # host reports a feasible accepted iterate; the last evaluated point is not
    euler_problem.intermediate_callback("test", 1, -3.0, 0.0, 0.0)
    assert not euler_problem.best.valid
    # an explicit iterate is taken with the host's infeasibility
    euler_problem.intermediate_callback("test", 2, -3.0, 0.0, 0.0, x=trial)
    assert euler_problem.best.valid


def test_unknown_status_rejected(problem):
    with pytest.raises(ConfigurationError, match="status"):
        problem.finalize_solution("exploded", problem.x0)
