from .blocks.aux import ConfigurationError, Scaling, SolverStatus, StabConfig
from .blocks.spectrum import Spectrum
from .roots import DegreeInfo, RootsProblem, Solution, degree_info

__all__ = [
    "ConfigurationError",
    "DegreeInfo",
    "RootsProblem",
    "Scaling",
    "Solution",
    "SolverStatus",
    "Spectrum",
    "StabConfig",
    "degree_info",
]
