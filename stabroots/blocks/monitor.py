from __future__ import annotations

import logging
from typing import Optional

import numpy as np


class BestIterate:
    """
    Best near-feasible iterate seen across solver iterations.

    An iterate replaces the snapshot when its primal infeasibility is within
    `tol` and its step size is strictly larger than the stored one, so among
    equal step sizes the first one seen is kept.
    """

    __slots__ = ("tol", "x", "dt", "inf_pr", "iter", "updates")

    def __init__(self, tol: float = 1e-6):
        if not tol >= 0.0:
            raise ValueError(f"tol must be non-negative, got {tol}")
        self.tol = float(tol)
        self.reset()

    def reset(self) -> None:
        self.x: Optional[np.ndarray] = None
        self.dt = -np.inf
        self.inf_pr = np.inf
        self.iter: Optional[int] = None
        self.updates = 0

    @property
    def valid(self) -> bool:
        return self.x is not None

    def update(self, x, dt: float, inf_pr: float, it: Optional[int] = None) -> bool:
        """Offer an iterate; returns True when it became the new snapshot."""
        dt = float(dt)
        inf_pr = float(inf_pr)
        if not (np.isfinite(dt) and inf_pr <= self.tol and dt > self.dt):
            return False
        self.x = np.array(x, dtype=float)
        self.dt = dt
        self.inf_pr = inf_pr
        self.iter = it
        self.updates += 1
        logging.debug(f"best iterate updated at iter {it}: dt={dt:.6e}, inf_pr={inf_pr:.3e}")
        return True

    def __repr__(self) -> str:
        if not self.valid:
            return "BestIterate(empty)"
        return f"BestIterate(dt={self.dt:.6e}, inf_pr={self.inf_pr:.3e}, iter={self.iter})"
