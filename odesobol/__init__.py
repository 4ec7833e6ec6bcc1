from odesobol.errors import ConfigurationError, IntegrationError, MinorOrMajorDeviation
from odesobol.krnl_simula import ODE_METHODS, TrajectoryBatch, evaluate_batch, simula
from odesobol.sc_sampla import ParameterSpec, build_matrices, parameter_specs, register_distribution, sample_matrices
from odesobol.sc_sensa import (
    SOBOL_METHODS,
    SobolResult,
    correct_deviations,
    jansen_indices,
    martinez_indices,
    ode_sobol,
    sensa,
)

__version__ = '1.0.0'

__all__ = [
    'ConfigurationError',
    'IntegrationError',
    'MinorOrMajorDeviation',
    'ODE_METHODS',
    'ParameterSpec',
    'SOBOL_METHODS',
    'SobolResult',
    'TrajectoryBatch',
    'build_matrices',
    'correct_deviations',
    'evaluate_batch',
    'jansen_indices',
    'martinez_indices',
    'ode_sobol',
    'parameter_specs',
    'register_distribution',
    'sample_matrices',
    'sensa',
    'simula',
]
