"""
Drive a `RootsProblem` through scipy's trust-constr method.

The binding only translates between the problem's Ipopt-shaped callback set and
`scipy.optimize.minimize`; iteration control, step acceptance and termination
stay in scipy. Per-iteration state is forwarded to `intermediate_callback` and
the result goes through `finalize_solution`, so the best-iterate fallback
applies whenever scipy stops without converging.
"""

from __future__ import annotations

import logging
from typing import Optional

import numpy as np
from scipy.optimize import Bounds, NonlinearConstraint, minimize

from .blocks.aux import SolverStatus
from .roots import RootsProblem, Solution

# trust-constr result.status -> host-independent status
_STATUS = {
    0: SolverStatus.MAXITER_EXCEEDED,
    1: SolverStatus.SUCCESS,
    2: SolverStatus.SUCCESS,
    3: SolverStatus.USER_REQUESTED_STOP,
}


class _Tracker:
    """Derives the `new_x` flag from consecutive callback arguments."""

    def __init__(self):
        self.x: Optional[np.ndarray] = None

    def new_x(self, x) -> bool:
        x = np.asarray(x, dtype=float)
        if self.x is not None and np.array_equal(x, self.x):
            return False
        self.x = x.copy()
        return True


def solve(
    problem: RootsProblem,
    maxiter: int = 1000,
    gtol: float = 1e-8,
    xtol: float = 1e-10,
    verbose: int = 0,
    x0=None,
) -> Solution:
    """Optimize `problem` with trust-constr and return its finalized `Solution`."""
    info = problem.get_nlp_info()
    x_l, x_u, g_l, g_u = problem.get_bounds_info()
    start = problem.get_starting_point().x if x0 is None else np.asarray(x0, dtype=float)
    zero_lam = np.zeros(info.m)
    seen = _Tracker()

    def fun(x):
        return problem.eval_f(x, seen.new_x(x))

    def grad(x):
        return problem.eval_grad_f(x, seen.new_x(x))

    def hess(x):
        return problem.hessian_matrix(x, seen.new_x(x), obj_factor=1.0, lam=zero_lam)

    def cons(x):
        return problem.eval_g(x, seen.new_x(x))

    def cons_jac(x):
        return problem.jacobian_matrix(x, seen.new_x(x))

    def cons_hess(x, v):
        return problem.hessian_matrix(x, seen.new_x(x), obj_factor=0.0, lam=v)

    def callback(xk, state):
        return not problem.intermediate_callback(
            "trust-constr",
            state.nit,
            float(state.fun),
            float(state.constr_violation),
            float(state.optimality),
            mu=float(getattr(state, "barrier_parameter", 0.0)),
            d_norm=float(getattr(state, "tr_radius", 0.0)),
            x=xk,
        )

    constraint = NonlinearConstraint(cons, g_l, g_u, jac=cons_jac, hess=cons_hess)
    res = minimize(
        fun,
        start,
        method="trust-constr",
        jac=grad,
        hess=hess,
        bounds=Bounds(x_l, x_u),
        constraints=[constraint],
        callback=callback,
        options={"maxiter": int(maxiter), "gtol": gtol, "xtol": xtol, "verbose": verbose},
    )
    status = _STATUS.get(int(res.status), SolverStatus.INTERNAL_ERROR)
    logging.info(f"trust-constr finished: {res.message} ({res.nit} iterations)")

    lam = None
    v = getattr(res, "v", None)
    if v:
        lam = np.asarray(v[0], dtype=float).ravel()
        if lam.size != info.m:
            lam = None
    g = problem.eval_g(res.x, seen.new_x(res.x))
    return problem.finalize_solution(status, res.x, g=g, lam=lam, obj_value=float(res.fun))
