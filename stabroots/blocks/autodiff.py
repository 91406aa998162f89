"""
Exact derivatives by re-running the generic evaluators on torch tensors.

A `Differentiable` pairs the plain-value instantiation of a function (numpy
float64) with its torch twin. Values come from the plain one; Jacobians and
Hessians come from `torch.autograd.functional` applied to the twin. There is
no hand-written derivative code: the twin is the same evaluator with its
numeric data lifted by `to_tensor`.
"""

from __future__ import annotations

from typing import Callable, Optional, Sequence

import numpy as np
import torch
from torch.autograd.functional import hessian as _hessian
from torch.autograd.functional import jacobian as _jacobian

DTYPE = torch.float64


def to_tensor(a) -> torch.Tensor:
    """float64 tensor holding a private copy of `a` (inputs may be read-only)."""
    return torch.tensor(np.array(a, dtype=float), dtype=DTYPE)


def _to_numpy(t: torch.Tensor) -> np.ndarray:
    return t.detach().cpu().numpy().astype(float, copy=False)


class Differentiable:
    """
    Plain evaluator plus its differentiable twin.

    `plain(x)` and `twin(x)` must implement the same mathematics; for functions
    that hold no numeric data the same callable serves as both.
    """

    __slots__ = ("plain", "twin")

    def __init__(self, plain: Callable, twin: Optional[Callable] = None):
        self.plain = plain
        self.twin = twin if twin is not None else plain

    @classmethod
    def lift(cls, evaluator) -> "Differentiable":
        """Twin built from an evaluator exposing `lifted(convert)`."""
        return cls(evaluator, evaluator.lifted(to_tensor))

    def value(self, x):
        return self.plain(np.asarray(x, dtype=float))

    def jacobian(self, x) -> np.ndarray:
        """d twin(x) / dx; shape (n,) for scalar outputs, (m, n) for vector outputs."""
        return _to_numpy(_jacobian(self.twin, to_tensor(x)))

    def hessian(self, x, fun: Optional[Callable] = None) -> np.ndarray:
        """Second derivative of a scalar function of the twin (default: the twin itself)."""
        return _to_numpy(_hessian(fun if fun is not None else self.twin, to_tensor(x)))


def lagrangian_hessian(
    objective: Differentiable,
    constraints: Differentiable,
    x,
    obj_factor: float,
    lam: Sequence[float],
) -> np.ndarray:
    """
    obj_factor * ∇²f(x) + Σ_i lam_i ∇²g_i(x).

    Each ∇²g_i is taken from the single-index evaluator `constraints.twin.constraint_i`
    so only one constraint is differentiated per weight; zero weights are skipped.
    """
    x = np.asarray(x, dtype=float)
    n = x.size
    H = np.zeros((n, n), dtype=float)
    if obj_factor != 0.0:
        H += float(obj_factor) * objective.hessian(x)
    twin = constraints.twin
    for i, li in enumerate(lam):
        if li == 0.0:
            continue
        H += float(li) * constraints.hessian(x, lambda t, i=i: twin.constraint_i(t, i))
    return H
