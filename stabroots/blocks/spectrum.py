# spectrum.py
# Immutable spectrum/hull containers and the interpolation source built on them.

from __future__ import annotations

from typing import Callable, Optional

import numpy as np

from .aux import ConfigurationError
from .interp import lin_intpol, segment_slopes


def _frozen(a: np.ndarray) -> np.ndarray:
    a = np.array(a, dtype=float)
    a.flags.writeable = False
    return a


class Spectrum:
    """
    Eigenvalues of the discretized operator, given in the closed upper half plane.

    Real parts must be sorted ascending. A hull is represented by the same type.
    """

    __slots__ = ("real", "imag", "name")

    def __init__(self, real, imag, name: str = "spectrum"):
        re = np.asarray(real, dtype=float).ravel()
        im = np.asarray(imag, dtype=float).ravel()
        if re.size == 0:
            raise ConfigurationError(f"{name} is empty")
        if re.size != im.size:
            raise ConfigurationError(
                f"{name} has {re.size} real parts but {im.size} imaginary parts"
            )
        if not (np.isfinite(re).all() and np.isfinite(im).all()):
            raise ConfigurationError(f"{name} contains non-finite values")
        if np.any(np.diff(re) < 0.0):
            raise ConfigurationError(f"{name} real parts must be sorted ascending")
        self.real = _frozen(re)
        self.imag = _frozen(im)
        self.name = name

    @classmethod
    def from_complex(cls, values, name: str = "spectrum") -> "Spectrum":
        """Build from complex eigenvalues: mirrored into the upper half plane, deduplicated, sorted."""
        z = np.asarray(values, dtype=complex).ravel()
        z = np.unique(np.where(z.imag < 0.0, np.conj(z), z))
        return cls(z.real, z.imag, name=name)

    def __len__(self) -> int:
        return self.real.size

    def __repr__(self) -> str:
        return f"Spectrum({self.name!r}, size={len(self)})"

    def scaled(self, factor: float) -> "Spectrum":
        """Spectrum pre-multiplied by a positive real factor (e.g. the reference step)."""
        factor = float(factor)
        if not (factor > 0.0 and np.isfinite(factor)):
            raise ConfigurationError(f"scale factor must be positive and finite, got {factor}")
        return Spectrum(self.real * factor, self.imag * factor, name=self.name)

    @property
    def real_min(self) -> float:
        return float(self.real[0])

    @property
    def real_max(self) -> float:
        return float(self.real[-1])


class InterpSource:
    """
    A resolved interpolation sequence (spectrum or hull) with its slope cache.

    `keys` stays a passive numpy array for the segment search; `real`, `imag` and
    `slopes` may be lifted to another numeric type with `lifted`.
    """

    __slots__ = ("keys", "real", "imag", "slopes", "use_hull")

    def __init__(self, seq: Spectrum, use_slope_cache: bool = True, use_hull: bool = False):
        self.keys = seq.real
        self.real = seq.real
        self.imag = seq.imag
        self.use_hull = bool(use_hull)
        self.slopes = None
        if use_slope_cache:
            # duplicated real parts are rejected later by validate()
            with np.errstate(divide="ignore", invalid="ignore"):
                self.slopes = segment_slopes(seq.real, seq.imag)

    def validate(self) -> None:
        """Interpolation needs two or more points with distinct real parts."""
        what = "hull" if self.use_hull else "spectrum"
        if self.keys.size < 2:
            raise ConfigurationError(f"{what} needs at least two points for interpolation")
        if np.any(np.diff(self.keys) <= 0.0):
            raise ConfigurationError(f"{what} real parts must be strictly increasing")

    def __call__(self, r):
        return lin_intpol(r, self.real, self.imag, self.slopes, self.keys)

    def lifted(self, convert: Callable) -> "InterpSource":
        twin = object.__new__(InterpSource)
        twin.keys = self.keys
        twin.real = convert(self.real)
        twin.imag = convert(self.imag)
        twin.slopes = None if self.slopes is None else convert(self.slopes)
        twin.use_hull = self.use_hull
        return twin


def interp_source(
    spectrum: Spectrum, hull: Optional[Spectrum] = None, use_slope_cache: bool = True
) -> InterpSource:
    """Interpolation source: the hull when given, else the spectrum itself."""
    if hull is not None:
        return InterpSource(hull, use_slope_cache, use_hull=True)
    return InterpSource(spectrum, use_slope_cache, use_hull=False)
