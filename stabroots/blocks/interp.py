"""
Piecewise-linear interpolation of the imaginary response along a sorted spectrum.

The sequence `(real, imag)` must be sorted ascending in `real` and hold at least
two points. For a query `r` the bracketing segment `[p_k, p_{k+1}]` is located on
passive float keys, so the segment choice is piecewise constant and carries no
derivative information; the returned value is `imag_k + slope_k * (r - real_k)`
and is generic in the numeric type of `r`, `real`, `imag` and `slopes`.

Queries left of the first node extrapolate with the first segment's slope;
queries at or right of the last node are anchored at the last node and
extrapolate with the last segment's slope. No clamping.
"""

from __future__ import annotations

import numpy as np


def segment_slopes(real, imag):
    """Per-segment slopes `(imag[k+1]-imag[k]) / (real[k+1]-real[k])`."""
    return (imag[1:] - imag[:-1]) / (real[1:] - real[:-1])


def _passive(r) -> float:
    # tensors are read without their graph
    if hasattr(r, "detach"):
        r = r.detach()
    return float(r)


def segment_index(r, keys: np.ndarray) -> int:
    """Index k of the left node of the segment used for `r` (last node past the end)."""
    k = int(np.searchsorted(keys, _passive(r), side="right")) - 1
    if k < 0:
        return 0
    return min(k, keys.size - 1)


def lin_intpol(r, real, imag, slopes=None, keys=None):
    """
    Imaginary coordinate of the polyline through `(real, imag)` at `r`.

    Parameters
    ----------
    r : scalar of any numeric type supporting `float()`
        Query real coordinate.
    real, imag : 1-D arrays (numpy or torch)
        Interpolation sequence, ascending in `real`.
    slopes : 1-D array, optional
        Slope cache from `segment_slopes`; computed on the fly when omitted.
    keys : np.ndarray, optional
        Passive copy of `real` for the segment search.
    """
    if keys is None:
        keys = np.asarray(real, dtype=float)
    k = segment_index(r, keys)
    last = keys.size - 1
    s = min(k, last - 1)
    if slopes is not None:
        slope = slopes[s]
    else:
        slope = (imag[s + 1] - imag[s]) / (real[s + 1] - real[s])
    return imag[k] + slope * (r - real[k])
