# roots.py
# Stability-root NLP: maximize the admissible step of an explicit multistage
# scheme subject to |P(z)| <= 1 on a sampled spectrum.
# - Decision vector x = [roots..., scale]; objective f(x) = -scale
# - Constraints g_i(x) = |P(z_i)| via the generic evaluators in blocks.stab
# - Exact derivatives by re-running the evaluators on torch tensors (blocks.autodiff)
# - Callback set shaped after Ipopt's TNLP; best near-feasible iterate kept as fallback
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Dict, NamedTuple, Optional, Tuple

import numpy as np
import scipy.sparse as sp

from .blocks.aux import (
    ConfigurationError,
    RootSpacing,
    Scaling,
    SolverStatus,
    StabConfig,
    _check_vec,
    _enum,
    _zeros_if_none,
)
from .blocks.autodiff import Differentiable, lagrangian_hessian
from .blocks.monitor import BestIterate
from .blocks.spectrum import Spectrum, interp_source
from .blocks.stab import StabilityConstraint, max_violation


# =============================================================================
# Descriptors and results
# =============================================================================
@dataclass(frozen=True)
class DegreeInfo:
    """Degree/parity descriptor derived once from the stage counts."""

    num_stages: int
    cons_order: int
    num_stages_ref: int
    degree: int
    odd_degree: bool
    n_roots: int
    use_hull: bool
    i_min: Optional[int]
    dt_ref: float
    dt_exp: float


class NLPInfo(NamedTuple):
    n: int
    m: int
    nnz_jac_g: int
    nnz_h_lag: int
    index_style: str = "C"


class StartingPoint(NamedTuple):
    x: Optional[np.ndarray]
    z_L: Optional[np.ndarray]
    z_U: Optional[np.ndarray]
    lam: Optional[np.ndarray]


@dataclass
class Solution:
    status: SolverStatus
    x: np.ndarray
    roots: np.ndarray
    scale: float
    dt: float
    obj_value: float
    g: np.ndarray
    inf_pr: float
    z_L: np.ndarray
    z_U: np.ndarray
    lam: np.ndarray
    from_snapshot: bool = False
    iterations: Optional[int] = None


def _positive_int(v, name: str) -> int:
    if int(v) != v or v < 1:
        raise ConfigurationError(f"{name} must be a positive integer, got {v!r}")
    return int(v)


def degree_info(
    num_stages: int, cons_order: int, num_stages_ref: int, dt_ref: float, use_hull: bool
) -> DegreeInfo:
    """
    Base degree = num_stages - cons_order + 1. An odd base degree gives an even
    lower-degree polynomial made of (degree-1)/2 root pairs; an even base degree
    gives degree/2 roots, one of which seeds the product. `i_min` is filled in
    once the starting roots are known.
    """
    S = _positive_int(num_stages, "num_stages")
    p = _positive_int(cons_order, "cons_order")
    S_ref = _positive_int(num_stages_ref, "num_stages_ref")
    dt_ref = float(dt_ref)
    if not (dt_ref > 0.0 and np.isfinite(dt_ref)):
        raise ConfigurationError(f"dt_ref must be positive and finite, got {dt_ref}")

    degree = S - p + 1
    if degree < 0:
        raise ConfigurationError(
            f"cons_order {p} exceeds num_stages {S} + 1; no stability polynomial left"
        )
    odd = degree % 2 == 1
    n_roots = (degree - 1) // 2 if odd else degree // 2
    if not odd and n_roots == 0:
        raise ConfigurationError(
            f"degree {degree} is even but has no root for the seed factor (i_min undefined)"
        )
    return DegreeInfo(
        num_stages=S,
        cons_order=p,
        num_stages_ref=S_ref,
        degree=degree,
        odd_degree=odd,
        n_roots=n_roots,
        use_hull=bool(use_hull),
        i_min=None,
        dt_ref=dt_ref,
        dt_exp=dt_ref * S / S_ref,
    )


# =============================================================================
# Problem model
# =============================================================================
class RootsProblem:
    """
    NLP model for optimal real roots of a stability polynomial.

    Parameters
    ----------
    num_stages, cons_order, num_stages_ref : int
        Stage count, consistency order and reference stage count.
    dt_ref : float
        Reference step size (stable step of the reference scheme).
    spectrum : Spectrum
        Operator eigenvalues in the upper half plane, real parts ascending.
    hull : Spectrum, optional
        Boundary points used for the imaginary response instead of the spectrum.
    cfg : StabConfig, optional
    """

    def __init__(
        self,
        num_stages: int,
        cons_order: int,
        num_stages_ref: int,
        dt_ref: float,
        spectrum: Spectrum,
        hull: Optional[Spectrum] = None,
        cfg: Optional[StabConfig] = None,
    ):
        self.cfg = cfg if cfg is not None else StabConfig()
        self.scaling = _enum(Scaling, self.cfg.scaling, "scaling")
        spacing = _enum(RootSpacing, self.cfg.root_spacing, "root_spacing")
        self._check_cfg()
        if not isinstance(spectrum, Spectrum):
            raise ConfigurationError("spectrum must be a Spectrum")
        if hull is not None and not isinstance(hull, Spectrum):
            raise ConfigurationError("hull must be a Spectrum or None")

        info = degree_info(num_stages, cons_order, num_stages_ref, dt_ref, hull is not None)
        N = info.n_roots

        # Spectrum in the coordinates of the active scaling
        if self.scaling is Scaling.REFERENCE:
            self.spectrum = spectrum.scaled(info.dt_ref)
            self.hull = None if hull is None else hull.scaled(info.dt_ref)
        else:
            self.spectrum = spectrum
            self.hull = hull
        self.source = interp_source(self.spectrum, self.hull, self.cfg.use_slope_cache)
        if N > 0:
            self.source.validate()

        self.n_roots = N
        self.n = N + 1
        self.m = len(self.spectrum)
        self._dt_ref = info.dt_ref
        self._dt_exp = info.dt_exp

        self.x_l, self.x_u = self._variable_bounds()
        self.g_l = np.full(self.m, -np.inf)
        self.g_u = np.ones(self.m)
        self.x0 = self._starting_point(spacing)

        i_min = None
        if not info.odd_degree:
            i_min = int(np.argmin(np.abs(self.x0[:N])))
        self.info = replace(info, i_min=i_min)

        evaluator = StabilityConstraint(
            self.spectrum, self.source, N, seed=i_min, scaling=self.scaling, dt_exp=info.dt_exp
        )
        self.evaluator = evaluator
        self.cons = Differentiable.lift(evaluator)
        self.obj = Differentiable(self._objective)

        self.best = BestIterate(self.cfg.best_inf_pr_tol)
        self.solution: Optional[Solution] = None
        self.n_iter: Optional[int] = None

        self._cache: Dict[object, object] = {}
        self._cache_x: Optional[Tuple[float, ...]] = None
        self._last_x: Optional[np.ndarray] = None

        logging.info(
            f"stability roots: degree {info.degree} ({'odd' if info.odd_degree else 'even'}), "
            f"{N} roots, i_min={i_min}, hull={info.use_hull}, scaling={self.scaling.value}, "
            f"{self.m} constraints, dt_exp={info.dt_exp:.6e}"
        )

    def __repr__(self) -> str:
        return (
            f"RootsProblem(degree={self.info.degree}, n={self.n}, m={self.m}, "
            f"hull={self.info.use_hull}, scaling={self.scaling.value!r})"
        )

    # -------------------------------------------------------------------------
    # Setup
    # -------------------------------------------------------------------------
    def _check_cfg(self) -> None:
        cfg = self.cfg
        if not cfg.real_margin >= 0.0:
            raise ConfigurationError(f"real_margin must be non-negative, got {cfg.real_margin}")
        if not cfg.scale_start > 0.0:
            raise ConfigurationError(f"scale_start must be positive, got {cfg.scale_start}")
        if cfg.min_step is not None and not cfg.min_step > 0.0:
            raise ConfigurationError(f"min_step must be positive, got {cfg.min_step}")
        if cfg.max_step is not None and cfg.min_step is not None and cfg.max_step <= cfg.min_step:
            raise ConfigurationError("max_step must exceed min_step")
        if not cfg.best_inf_pr_tol >= 0.0:
            raise ConfigurationError("best_inf_pr_tol must be non-negative")

    def _scale_of(self, dt: float) -> float:
        if self.scaling is Scaling.REFERENCE:
            return dt * self._dt_exp / self._dt_ref
        return dt

    def step_size(self, x) -> float:
        """Physical step size implied by the scale variable."""
        s = float(x[self.n_roots])
        if self.scaling is Scaling.REFERENCE:
            return s * self._dt_ref / self._dt_exp
        return s

    def _root_interval(self) -> Tuple[float, float]:
        keys = self.source.keys
        lo = float(keys[0])
        hi = min(float(keys[-1]), 0.0) - self.cfg.real_margin * abs(lo)
        return lo, hi

    def _variable_bounds(self) -> Tuple[np.ndarray, np.ndarray]:
        N = self.n_roots
        x_l = np.empty(self.n)
        x_u = np.empty(self.n)
        if N > 0:
            lo, hi = self._root_interval()
            if not lo < hi:
                raise ConfigurationError(
                    f"no admissible root interval: real extent [{lo:.6e}, {hi:.6e}] "
                    "must reach into the left half plane beyond the margin"
                )
            x_l[:N] = lo
            x_u[:N] = hi

        min_step = self.cfg.min_step if self.cfg.min_step is not None else 1e-6 * self._dt_ref
        x_l[N] = self._scale_of(min_step)
        x_u[N] = np.inf if self.cfg.max_step is None else self._scale_of(self.cfg.max_step)
        return x_l, x_u

    def _starting_point(self, spacing: RootSpacing) -> np.ndarray:
        N = self.n_roots
        x0 = np.empty(self.n)
        if N > 0:
            lo, hi = self.x_l[0], self.x_u[0]
            if spacing is RootSpacing.GEOMETRIC and hi < 0.0:
                x0[:N] = np.geomspace(lo, hi, N + 2)[1:-1]
            else:
                x0[:N] = np.linspace(lo, hi, N + 2)[1:-1]
        x0[N] = np.clip(self.cfg.scale_start * self._dt_exp, self.x_l[N], self.x_u[N])
        return x0

    def _objective(self, x):
        return -x[self.n_roots]

    # -------------------------------------------------------------------------
    # Value reuse
    # -------------------------------------------------------------------------
    def _sync(self, x, new_x: bool) -> np.ndarray:
        x = _check_vec(x, self.n, "x")
        key = tuple(x.tolist())
        if new_x or not self.cfg.reuse_values or key != self._cache_x:
            self._cache = {}
            self._cache_x = key
        self._last_x = x
        return x

    def _cached(self, name, compute):
        if name not in self._cache:
            self._cache[name] = compute()
        return self._cache[name]

    def _constraints(self, x: np.ndarray) -> np.ndarray:
        with np.errstate(divide="ignore", invalid="ignore"):
            g = np.asarray(self.cons.value(x), dtype=float)
        if not np.isfinite(g).all():
            logging.warning(
                f"non-finite stability constraint values at x={x.tolist()}; "
                "a root reached the origin or a seed root vanished"
            )
        return g

    # -------------------------------------------------------------------------
    # Callback set (Ipopt TNLP shape)
    # -------------------------------------------------------------------------
    def get_nlp_info(self) -> NLPInfo:
        n, m = self.n, self.m
        return NLPInfo(n=n, m=m, nnz_jac_g=m * n, nnz_h_lag=n * (n + 1) // 2, index_style="C")

    def get_bounds_info(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
        return self.x_l.copy(), self.x_u.copy(), self.g_l.copy(), self.g_u.copy()

    def get_starting_point(
        self, init_x: bool = True, init_z: bool = False, init_lambda: bool = False
    ) -> StartingPoint:
        return StartingPoint(
            x=self.x0.copy() if init_x else None,
            z_L=np.zeros(self.n) if init_z else None,
            z_U=np.zeros(self.n) if init_z else None,
            lam=np.zeros(self.m) if init_lambda else None,
        )

    def eval_f(self, x, new_x: bool = True) -> float:
        x = self._sync(x, new_x)
        return float(self._cached("f", lambda: self.obj.value(x)))

    def eval_grad_f(self, x, new_x: bool = True) -> np.ndarray:
        x = self._sync(x, new_x)
        return self._cached("grad_f", lambda: self.obj.jacobian(x)).copy()

    def eval_g(self, x, new_x: bool = True) -> np.ndarray:
        x = self._sync(x, new_x)
        return self._cached("g", lambda: self._constraints(x)).copy()

    def jacobian_structure(self) -> Tuple[np.ndarray, np.ndarray]:
        rows = np.repeat(np.arange(self.m), self.n)
        cols = np.tile(np.arange(self.n), self.m)
        return rows, cols

    def hessian_structure(self) -> Tuple[np.ndarray, np.ndarray]:
        return np.tril_indices(self.n)

    def eval_jac_g(self, x=None, new_x: bool = True):
        """
        Structure `(rows, cols)` when `x` is None, else the row-major values
        matching that structure. The Jacobian is dense.
        """
        if x is None:
            return self.jacobian_structure()
        x = self._sync(x, new_x)
        J = self._cached("jac_g", lambda: self.cons.jacobian(x))
        return J.reshape(-1).copy()

    def eval_h(
        self,
        x=None,
        new_x: bool = True,
        obj_factor: float = 1.0,
        lam=None,
        new_lambda: bool = True,
    ):
        """
        Structure `(rows, cols)` of the lower triangle when `x` is None, else the
        values of obj_factor*∇²f + Σ lam_i ∇²g_i on that structure.
        """
        if x is None:
            return self.hessian_structure()
        x = self._sync(x, new_x)
        lam = _zeros_if_none(lam, self.m)
        key = ("h", float(obj_factor), tuple(lam.tolist()))
        if new_lambda:
            self._cache.pop(key, None)
        H = self._cached(key, lambda: lagrangian_hessian(self.obj, self.cons, x, obj_factor, lam))
        rows, cols = self.hessian_structure()
        return H[rows, cols].copy()

    # -------------------------------------------------------------------------
    # Sparse assemblies for hosts that take matrices
    # -------------------------------------------------------------------------
    def jacobian_matrix(self, x, new_x: bool = True) -> sp.csr_matrix:
        rows, cols = self.jacobian_structure()
        vals = self.eval_jac_g(x, new_x)
        return sp.coo_matrix((vals, (rows, cols)), shape=(self.m, self.n)).tocsr()

    def hessian_matrix(self, x, new_x: bool = True, obj_factor: float = 1.0, lam=None) -> sp.csr_matrix:
        """Full symmetric Lagrangian Hessian from its lower triangle."""
        rows, cols = self.hessian_structure()
        vals = self.eval_h(x, new_x, obj_factor, lam)
        L = sp.coo_matrix((vals, (rows, cols)), shape=(self.n, self.n))
        D = sp.diags(L.diagonal())
        return (L + L.T - D).tocsr()

    # -------------------------------------------------------------------------
    # Iteration monitor and finalization
    # -------------------------------------------------------------------------
    def intermediate_callback(
        self,
        mode,
        iter_count: int,
        obj_value: float,
        inf_pr: float,
        inf_du: float,
        mu: float = 0.0,
        d_norm: float = 0.0,
        regularization_size: float = 0.0,
        alpha_du: float = 0.0,
        alpha_pr: float = 0.0,
        ls_trials: int = 0,
        x=None,
    ) -> bool:
        """
        Per-iteration hook. Offers the current iterate (`x`, or the last evaluated
        point when the host does not pass one) to the best-iterate snapshot. For
        the last evaluated point, `inf_pr` is recomputed from its constraints.
        Always returns True (continue).
        """
        self.n_iter = int(iter_count)
        level = logging.INFO if self.cfg.verbose else logging.DEBUG
        logging.log(
            level,
            f"{mode} iter {iter_count:4d}  f={obj_value:+.8e}  inf_pr={inf_pr:.2e}  "
            f"inf_du={inf_du:.2e}  mu={mu:.2e}  |d|={d_norm:.2e}  "
            f"alpha=({alpha_du:.2e},{alpha_pr:.2e})  ls={ls_trials}",
        )
        if x is None:
            # last evaluated point may be a trial point; measure it directly
            xk = self._last_x
            if xk is not None:
                inf_pr = max_violation(self.eval_g(xk, new_x=False))
        else:
            xk = _check_vec(x, self.n, "x")
        if xk is not None and self.best.update(xk, self.step_size(xk), inf_pr, it=iter_count):
            logging.log(level, f"best iterate: dt={self.best.dt:.8e} at iter {iter_count}")
        return True

    def finalize_solution(
        self,
        status,
        x,
        z_L=None,
        z_U=None,
        g=None,
        lam=None,
        obj_value: Optional[float] = None,
    ) -> Solution:
        """
        Record the host's final point. When the host did not converge and a
        best-iterate snapshot exists, the snapshot is reported instead, with
        zero multipliers.
        """
        status = _enum(SolverStatus, status, "status")
        x = _check_vec(x, self.n, "x")
        from_snapshot = False
        if not status.converged and self.best.valid:
            logging.warning(
                f"solver finished with status {status.value}; reporting best iterate "
                f"from iter {self.best.iter} (dt={self.best.dt:.8e})"
            )
            x = self.best.x.copy()
            g = None
            obj_value = None
            # host multipliers belong to the host point
            z_L = z_U = lam = None
            from_snapshot = True

        if g is None:
            g = self._constraints(x)
        else:
            g = _check_vec(g, self.m, "g")
        if obj_value is None:
            obj_value = float(self.obj.value(x))

        N = self.n_roots
        self.solution = Solution(
            status=status,
            x=x.copy(),
            roots=x[:N].copy(),
            scale=float(x[N]),
            dt=self.step_size(x),
            obj_value=float(obj_value),
            g=g,
            inf_pr=max_violation(g),
            z_L=_zeros_if_none(z_L, self.n),
            z_U=_zeros_if_none(z_U, self.n),
            lam=_zeros_if_none(lam, self.m),
            from_snapshot=from_snapshot,
            iterations=self.n_iter,
        )
        logging.info(
            f"finalized: status={status.value}, dt={self.solution.dt:.8e}, "
            f"max|P|-1={self.solution.inf_pr:.2e}, snapshot={from_snapshot}"
        )
        return self.solution
