# aux.py
# Shared configuration, enums and small array helpers for the stability-root model.

from __future__ import annotations

# =========================
# Standard library
# =========================
from dataclasses import dataclass
from enum import Enum
from typing import Optional

# =========================
# Third-party
# =========================
import numpy as np


class ConfigurationError(ValueError):
    """Raised when a problem instance cannot be assembled from its inputs."""


# ======================================
# Enums
# ======================================
class Scaling(Enum):
    """How the scale variable enters the stability polynomial."""

    REFERENCE = "reference"  # spectrum pre-scaled by dt_ref, scale divided by dt_exp
    ROOT = "root"  # raw spectrum, scale multiplies every root


class RootSpacing(Enum):
    GEOMETRIC = "geometric"
    LINEAR = "linear"


class SolverStatus(Enum):
    """Final status reported by a host solver (mirrors Ipopt's SolverReturn)."""

    SUCCESS = "success"
    MAXITER_EXCEEDED = "maxiter_exceeded"
    CPUTIME_EXCEEDED = "cputime_exceeded"
    STOP_AT_TINY_STEP = "stop_at_tiny_step"
    STOP_AT_ACCEPTABLE_POINT = "stop_at_acceptable_point"
    LOCAL_INFEASIBILITY = "local_infeasibility"
    USER_REQUESTED_STOP = "user_requested_stop"
    DIVERGING_ITERATES = "diverging_iterates"
    RESTORATION_FAILURE = "restoration_failure"
    ERROR_IN_STEP_COMPUTATION = "error_in_step_computation"
    INVALID_NUMBER_DETECTED = "invalid_number_detected"
    INTERNAL_ERROR = "internal_error"

    @property
    def converged(self) -> bool:
        return self in (SolverStatus.SUCCESS, SolverStatus.STOP_AT_ACCEPTABLE_POINT)


def _enum(kind, value, name: str):
    if isinstance(value, kind):
        return value
    try:
        return kind(str(value).lower())
    except ValueError:
        options = ", ".join(repr(k.value) for k in kind)
        raise ConfigurationError(f"{name} must be one of {options}, got {value!r}") from None


# ======================================
# Global configuration
# ======================================
@dataclass
class StabConfig:
    """
    Configuration for the stability-root problem model.

    Notes
    -----
    • Fields are read by `RootsProblem` at construction; later edits have no effect.
    • Step sizes (`min_step`, `max_step`) are physical; they are converted to
      scale units according to `scaling`.
    """

    # ---------------- Formulation ----------------
    scaling: str = "reference"  # {"reference","root"}
    use_slope_cache: bool = True

    # ---------------- Bounds ----------------
    real_margin: float = 1e-3  # relative gap between the rightmost root and min(real_max, 0)
    min_step: Optional[float] = None  # None -> 1e-6 * dt_ref
    max_step: Optional[float] = None  # None -> unbounded

    # ---------------- Starting point ----------------
    root_spacing: str = "geometric"  # {"geometric","linear"}
    scale_start: float = 0.5  # fraction of dt_exp

    # ---------------- Monitoring ----------------
    best_inf_pr_tol: float = 1e-6
    reuse_values: bool = True
    verbose: bool = False


# ======================================
# Array helpers
# ======================================
def _as_float_array(a, shape=None) -> np.ndarray:
    out = np.asarray(a, dtype=float)
    if shape is not None and out.shape != shape:
        out = out.reshape(shape)
    return out


def _check_vec(v, size: int, name: str) -> np.ndarray:
    a = _as_float_array(v).ravel()
    if a.size != size:
        raise ValueError(f"{name} has length {a.size}, expected {size}")
    return a


def _zeros_if_none(v, size: int) -> np.ndarray:
    if v is None:
        return np.zeros(size, dtype=float)
    return _check_vec(v, size, "vector")
