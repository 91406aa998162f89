"""
Stability-polynomial constraints over a sampled spectrum.

For decision vector `x = [x_0, ..., x_{N-1}, s]` the stability polynomial is

    P(z) = 1 + z * Q(z),

where the lower-degree polynomial Q is a product of linear factors. Every free
root x_j is paired with the imaginary response b_j of the spectrum at x_j
(piecewise-linear interpolation) and contributes the conjugate pair

    (1 - z / r_j) * (1 - z / conj(r_j)),    r_j = x_j + i b_j.

On the odd-degree branch (Q of even degree) the product starts at the first
root. On the even-degree branch (Q of odd degree) it starts from the real seed
factor `1 - z / x_{i_min}` and root `i_min` is skipped in the loop. Each
constraint value is |P(z_i)| at one scaled spectrum point z_i.

Two scalings are supported:

    reference : z = point / dt_exp * s,  r_j = x_j + i b(x_j)
    root      : z = point * s,           r_j = s * (x_j + i b(x_j))

All arithmetic is written with operators only, carrying complex numbers as
(re, im) pairs, so the same code runs on numpy floats and on torch tensors.
"""

from __future__ import annotations

from typing import Callable, Optional

import numpy as np

from .aux import Scaling
from .spectrum import InterpSource, Spectrum


def _cmul(ar, ai, br, bi):
    return ar * br - ai * bi, ar * bi + ai * br


class StabilityConstraint:
    """
    Vector of |P(z_i)| over the constraint points.

    Parameters
    ----------
    points : Spectrum
        Eigenvalues at which the amplification factor is bounded.
    source : InterpSource
        Sequence used for the imaginary response b(x_j) (spectrum or hull).
    n_roots : int
        Number of free real roots N.
    seed : int or None
        `i_min` on the even-degree branch; None on the odd-degree branch.
    scaling : Scaling
    dt_exp : float
        Expected step; only used with reference scaling.
    """

    __slots__ = ("ev_real", "ev_imag", "source", "n_roots", "seed", "scaling", "dt_exp")

    def __init__(
        self,
        points: Spectrum,
        source: InterpSource,
        n_roots: int,
        seed: Optional[int] = None,
        scaling: Scaling = Scaling.REFERENCE,
        dt_exp: float = 1.0,
    ):
        if seed is not None and not (0 <= seed < n_roots):
            raise ValueError(f"seed index {seed} outside [0, {n_roots})")
        self.ev_real = points.real
        self.ev_imag = points.imag
        self.source = source
        self.n_roots = int(n_roots)
        self.seed = seed
        self.scaling = Scaling(scaling)
        self.dt_exp = float(dt_exp)

    @property
    def size(self) -> int:
        return len(self.ev_real)

    def lifted(self, convert: Callable) -> "StabilityConstraint":
        """Twin evaluator whose numeric data are passed through `convert`."""
        twin = object.__new__(StabilityConstraint)
        twin.ev_real = convert(self.ev_real)
        twin.ev_imag = convert(self.ev_imag)
        twin.source = self.source.lifted(convert)
        twin.n_roots = self.n_roots
        twin.seed = self.seed
        twin.scaling = self.scaling
        twin.dt_exp = self.dt_exp
        return twin

    # ------------------------------------------------------------------ #
    # Evaluation
    # ------------------------------------------------------------------ #
    def __call__(self, x):
        """All constraint values at `x`."""
        return self._modulus(x, self.ev_real, self.ev_imag)

    def constraint_i(self, x, i: int):
        """Constraint value for spectrum point `i` alone (same arithmetic as `__call__`)."""
        return self._modulus(x, self.ev_real[i : i + 1], self.ev_imag[i : i + 1])[0]

    def _root(self, x, j: int):
        """Scaled root position and imaginary response of root j."""
        N = self.n_roots
        if self.scaling is Scaling.ROOT:
            return x[j] * x[N], x[N] * self.source(x[j])
        return x[j], self.source(x[j])

    def _modulus(self, x, ev_real, ev_imag):
        N = self.n_roots
        if self.scaling is Scaling.ROOT:
            RealEV = ev_real * x[N]
            ImagEV = ev_imag * x[N]
        else:
            RealEV = ev_real / self.dt_exp * x[N]
            ImagEV = ev_imag / self.dt_exp * x[N]

        if self.seed is None:
            start = 0
            ProdRe = ProdIm = None
        else:
            start = None
            xs, _ = self._root(x, self.seed)
            ProdRe, ProdIm = 1.0 - RealEV / xs, -ImagEV / xs

        for j in range(N):
            if j == self.seed:
                continue
            xr, b = self._root(x, j)
            Radius = xr * xr + b * b

            Real = (xr * (xr - RealEV) + b * (b - ImagEV)) / Radius
            Imag = (b * RealEV - xr * ImagEV) / Radius
            if j == start:
                ProdRe, ProdIm = Real, Imag
            else:
                ProdRe, ProdIm = _cmul(ProdRe, ProdIm, Real, Imag)

            ProdRe, ProdIm = _cmul(
                ProdRe, ProdIm, Real + 2.0 * b * ImagEV / Radius, Imag - 2.0 * b * RealEV / Radius
            )

        # From lower-degree to actual stability polynomial
        if ProdRe is None:
            ProdRe, ProdIm = RealEV, ImagEV
        else:
            ProdRe, ProdIm = _cmul(ProdRe, ProdIm, RealEV, ImagEV)
        ProdRe = ProdRe + 1.0

        return (ProdRe * ProdRe + ProdIm * ProdIm) ** 0.5


def max_violation(g) -> float:
    """Largest excess of |P| over 1 (0 when all constraints hold, inf for non-finite values)."""
    g = np.asarray(g, dtype=float)
    if g.size == 0:
        return 0.0
    if not np.isfinite(g).all():
        return float("inf")
    return float(max(0.0, np.max(g) - 1.0))
