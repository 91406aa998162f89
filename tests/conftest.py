import numpy as np
import pytest

from stabroots import Spectrum


def _circle(n, center=-1.0, radius=1.0, theta_min=0.05, theta_max=np.pi - 0.05):
    theta = np.linspace(theta_min, theta_max, n)
    return center + radius * np.exp(1j * theta)


@pytest.fixture
def circle_spectrum():
    """Upwind-advection-like spectrum on |z + 1| = 1, upper half."""
    return Spectrum.from_complex(_circle(24))


@pytest.fixture
def circle_hull():
    """Slightly larger circle enclosing `circle_spectrum`."""
    return Spectrum.from_complex(
        _circle(12, radius=1.05, theta_min=0.02, theta_max=np.pi - 0.02), name="hull"
    )


@pytest.fixture
def midpoints():
    """Points halfway between consecutive real parts of a sequence, away from interpolation kinks."""

    def _mid(seq, idx):
        re = seq.real
        return np.array([(re[k] + re[k + 1]) / 2.0 for k in idx])

    return _mid
