from collections.abc import Mapping
from dataclasses import dataclass
from numbers import Integral, Real
from pathlib import Path
import logging
import os
import warnings

import numpy as np
import pandas as pd

from odesobol.errors import ConfigurationError, MinorOrMajorDeviation
from odesobol.krnl_simula import check_ode_method, evaluate_batch
from odesobol.sc_sampla import build_matrices, parameter_specs, sample_matrices

logger = logging.getLogger(__name__)

SOBOL_METHODS = ('Jansen', 'Martinez')

# Deviation thresholds: values within the tolerance are clamped silently,
# values beyond it are kept and reported.
_FIRST_ORDER_TOLERANCE = -0.05
_TOTAL_ORDER_TOLERANCE = 1.05


@dataclass(frozen=True, eq=False)
class SobolResult:
    """
    First-order and total-order Sobol' indices of an ODE model.

    Attributes
    ----------
    sobol_method : str
        Estimator that produced the indices, 'Jansen' or 'Martinez'.
    pars : tuple[str, ...]
        Parameter names (axis 2 of the index arrays).
    states : tuple[str, ...]
        State variable names (axis 0).
    times : np.ndarray
        Ascending timepoints (axis 1).
    first_order : np.ndarray, shape (z, len(times), k)
        First-order indices S1, after deviation correction.
    total_order : np.ndarray, shape (z, len(times), k)
        Total-order indices ST, after deviation correction.

    Notes
    -----
    The index arrays are read-only copies of the arrays passed in. ``result['Prey']`` returns
    ``{'S1': DataFrame, 'ST': DataFrame}`` with parameters as rows and
    timepoints as columns.
    """

    sobol_method: str
    pars: tuple
    states: tuple
    times: np.ndarray
    first_order: np.ndarray
    total_order: np.ndarray

    def __post_init__(self):
        for name in ('times', 'first_order', 'total_order'):
            array = np.array(getattr(self, name), dtype=float)
            array.setflags(write=False)
            object.__setattr__(self, name, array)

    @property
    def shape(self):
        return self.first_order.shape

    def __len__(self):
        return len(self.states)

    def __iter__(self):
        return iter(self.states)

    def __getitem__(self, state):
        return {'S1': self.S1(state), 'ST': self.ST(state)}

    def _frame(self, indices, state):
        if state not in self.states:
            raise KeyError(f"Unknown state variable '{state}'")
        return pd.DataFrame(
            indices[self.states.index(state)].T,
            index=pd.Index(self.pars, name='parameter'),
            columns=pd.Index(self.times, name='time'),
        )

    def S1(self, state):
        """First-order indices of ``state`` (rows: parameters, columns: times)."""
        return self._frame(self.first_order, state)

    def ST(self, state):
        """Total-order indices of ``state`` (rows: parameters, columns: times)."""
        return self._frame(self.total_order, state)

    def to_frame(self):
        """Long table with one row per (state, time, parameter)."""
        z, n_times, k = self.shape
        index = pd.MultiIndex.from_product(
            [self.states, self.times, self.pars], names=['state', 'time', 'parameter']
        )
        frame = pd.DataFrame(
            {'S1': self.first_order.reshape(-1), 'ST': self.total_order.reshape(-1)},
            index=index,
        )
        return frame.reset_index()


def jansen_indices(y_A, y_B, y_C):
    """
    Jansen estimator of first-order and total-order Sobol' indices.

    Parameters
    ----------
    y_A, y_B : np.ndarray, shape (n, len(times), z)
        Trajectories of the base matrices A and B.
    y_C : np.ndarray, shape (k, n, len(times), z)
        Trajectories of C_j (B with column j from A), one per parameter.

    Returns
    -------
    S1, ST : np.ndarray, shape (z, len(times), k)

    Notes
    -----
    **Estimator Formula**:
        \\[
        S_j = \\frac{\\text{Var}(Y_A) - \\frac{1}{2N}\\sum_i (Y_A^{(i)} - Y_{C_j}^{(i)})^2}{V}, \\qquad
        ST_j = \\frac{\\frac{1}{2N}\\sum_i (Y_B^{(i)} - Y_{C_j}^{(i)})^2}{V}
        \\]
    where V is the variance of the pooled outputs of A and B.
    """
    with np.errstate(divide='ignore', invalid='ignore'):
        V = np.var(np.concatenate([y_A, y_B], axis=0), axis=0, ddof=1)
        var_A = np.var(y_A, axis=0, ddof=1)
        S1 = (var_A - 0.5 * np.mean((y_A - y_C) ** 2, axis=1)) / V
        ST = 0.5 * np.mean((y_B - y_C) ** 2, axis=1) / V
    return np.transpose(S1, (2, 1, 0)), np.transpose(ST, (2, 1, 0))


def _correlation(x, y):
    # Pearson correlation along the sample axis (-3); broadcasts over parameters.
    xc = x - x.mean(axis=-3, keepdims=True)
    yc = y - y.mean(axis=-3, keepdims=True)
    num = np.sum(xc * yc, axis=-3)
    den = np.sqrt(np.sum(xc ** 2, axis=-3) * np.sum(yc ** 2, axis=-3))
    return num / den


def martinez_indices(y_A, y_B, y_D):
    """
    Martinez (correlation based) estimator of Sobol' indices.

    Parameters
    ----------
    y_A, y_B : np.ndarray, shape (n, len(times), z)
        Trajectories of the base matrices A and B.
    y_D : np.ndarray, shape (k, n, len(times), z)
        Trajectories of D_j (A with column j from B), one per parameter.

    Returns
    -------
    S1, ST : np.ndarray, shape (z, len(times), k)
        ``S1_j = corr(Y_B, Y_Dj)`` and ``ST_j = 1 - corr(Y_A, Y_Dj)``.
    """
    with np.errstate(divide='ignore', invalid='ignore'):
        S1 = _correlation(y_B, y_D)
        ST = 1.0 - _correlation(y_A, y_D)
    return np.transpose(S1, (2, 1, 0)), np.transpose(ST, (2, 1, 0))


_ESTIMATORS = {
    'Jansen': jansen_indices,
    'Martinez': martinez_indices,
}


def _report_major(mask, values, kind, bound, states, times, pars, stacklevel):
    for s, state in enumerate(states):
        hits = np.argwhere(mask[s])
        if not len(hits):
            continue
        cases = ', '.join(
            f"(time={times[t]:g}, parameter={pars[j]}, value={values[s, t, j]:.4f})" for t, j in hits
        )
        message = (
            f"State variable '{state}': {kind} indices {bound} (major deviation) for {cases}. "
            f"The Monte Carlo estimate is unreliable; consider increasing n."
        )
        logger.warning(message)
        warnings.warn(message, MinorOrMajorDeviation, stacklevel=stacklevel)


def correct_deviations(first_order, total_order, states=None, times=None, pars=None, stacklevel=2):
    """
    Clamp minor numerical deviations of Sobol' indices and report major ones.

    Parameters
    ----------
    first_order, total_order : array_like, shape (z, len(times), k)
        Raw indices.
    states, times, pars : sequence, optional
        Axis labels used in warning messages; positions are used if omitted.
    stacklevel : int, optional
        Passed to ``warnings.warn`` as seen from this function; the default
        attributes warnings to the caller of ``correct_deviations``.

    Returns
    -------
    first_order, total_order : np.ndarray
        Corrected copies with unchanged shape.

    Notes
    -----
    **First order**:
        - [-0.05, 0): set to 0, silently.
        - < -0.05: kept, ``MinorOrMajorDeviation`` warning.
        - > 1: kept, silently.

    **Total order**:
        - (1, 1.05]: set to 1, silently.
        - > 1.05: kept, ``MinorOrMajorDeviation`` warning.
        - < 0: kept, silently.

    NaN values are left untouched. Applying the correction twice gives the
    same values as applying it once.
    """
    S1 = np.array(first_order, dtype=float)
    ST = np.array(total_order, dtype=float)
    z, n_times, k = S1.shape
    states = list(states) if states is not None else list(range(z))
    times = list(times) if times is not None else list(range(n_times))
    pars = list(pars) if pars is not None else list(range(k))

    with np.errstate(invalid='ignore'):
        S1[(S1 >= _FIRST_ORDER_TOLERANCE) & (S1 < 0)] = 0.0
        ST[(ST > 1) & (ST <= _TOTAL_ORDER_TOLERANCE)] = 1.0
        major_S1 = S1 < _FIRST_ORDER_TOLERANCE
        major_ST = ST > _TOTAL_ORDER_TOLERANCE

    _report_major(major_S1, S1, 'first order', '< -0.05', states, times, pars, stacklevel + 1)
    _report_major(major_ST, ST, 'total', '> 1.05', states, times, pars, stacklevel + 1)
    return S1, ST


def _check_state_init(state_init):
    if isinstance(state_init, pd.Series):
        if not state_init.index.is_unique:
            raise ConfigurationError('Names of "state_init" must be unique')
        items = list(state_init.items())
    elif isinstance(state_init, Mapping):
        items = list(state_init.items())
    else:
        raise ConfigurationError('"state_init" must be a mapping (or pandas Series) of named initial values')

    if not items:
        raise ConfigurationError('"state_init" must contain at least one state variable')

    checked = {}
    for name, value in items:
        if not isinstance(name, str) or not name:
            raise ConfigurationError(f'State variable names must be non-empty strings, got {name!r}')
        if isinstance(value, bool) or not isinstance(value, Real) or not np.isfinite(value):
            raise ConfigurationError(f"Initial value of '{name}' must be a finite real number, got {value!r}")
        checked[name] = float(value)
    return checked


def _check_times(times):
    try:
        times = np.asarray(times, dtype=float)
    except (TypeError, ValueError):
        raise ConfigurationError('"times" must be a numeric vector') from None

    times = np.atleast_1d(times)
    if times.ndim != 1 or times.size == 0:
        raise ConfigurationError('"times" must be a non-empty one-dimensional vector')
    if not np.all(np.isfinite(times)):
        raise ConfigurationError('"times" must be finite')
    if np.any(times == 0):
        raise ConfigurationError('"times" must not contain 0; the initial state is taken at t = 0')
    if np.any(times < 0):
        raise ConfigurationError('"times" must be positive')
    if len(np.unique(times)) != len(times):
        raise ConfigurationError('"times" must not contain duplicates')
    return np.sort(times)


def _check_n(n):
    if isinstance(n, bool):
        raise ConfigurationError(f'"n" must be an integer >= 2, got {n!r}')
    if isinstance(n, Real) and not isinstance(n, Integral) and float(n).is_integer():
        n = int(n)
    if not isinstance(n, Integral) or n < 2:
        raise ConfigurationError(f'"n" must be an integer >= 2, got {n!r}')
    return int(n)


def _check_workers(parallel_eval, parallel_eval_ncores):
    if not isinstance(parallel_eval, (bool, np.bool_)):
        raise ConfigurationError(f'"parallel_eval" must be a logical flag, got {parallel_eval!r}')
    if parallel_eval_ncores is not None:
        if isinstance(parallel_eval_ncores, bool) or not isinstance(parallel_eval_ncores, Integral) \
                or parallel_eval_ncores < 1:
            raise ConfigurationError(
                f'"parallel_eval_ncores" must be an integer >= 1, got {parallel_eval_ncores!r}'
            )
    if not parallel_eval:
        return None
    return 1 if parallel_eval_ncores is None else int(parallel_eval_ncores)


def ode_sobol(mod, pars, state_init, times, n=1000, rfuncs='runif', rargs=None,
              sobol_method='Martinez', ode_method='lsoda', parallel_eval=False,
              parallel_eval_ncores=None, seed=None, rtol=1e-6, atol=1e-8):
    """
    Sobol' sensitivity analysis of an ODE model for all states and timepoints.

    Parameters
    ----------
    mod : callable
        Right-hand side ``mod(t, y, pars) -> dy/dt``; ``y`` is the state
        vector ordered like ``state_init`` and ``pars`` a dict of parameter
        values.
    pars : sequence of str
        Names of the k parameters included in the analysis.
    state_init : dict[str, float] or pandas.Series
        Named initial values of the z state variables.
    times : array_like
        Timepoints of interest, all > 0. Sorted internally.
    n : int, optional
        Number of Monte Carlo samples per base matrix (default: 1000).
    rfuncs : str or sequence of str, optional
        Distribution identifier(s), length 1 or k (default: 'runif').
    rargs : Mapping or sequence of Mapping, optional
        Distribution argument record(s), length 1 or k
        (default: the registered defaults of each distribution, ``{'min': 0, 'max': 1}``
        for the default 'runif').
    sobol_method : {'Jansen', 'Martinez'}, optional
        Estimator (default: 'Martinez').
    ode_method : str, optional
        Integration method, one of ``krnl_simula.ODE_METHODS`` (default: 'lsoda').
    parallel_eval : bool, optional
        Integrate the sample rows on worker processes.
    parallel_eval_ncores : int, optional
        Number of worker processes; 1 if ``parallel_eval`` and not given.
    seed : int or numpy.random.Generator, optional
        Seed of the parameter sampling.
    rtol, atol : float, optional
        Tolerances of the adaptive solvers.

    Returns
    -------
    SobolResult
        Corrected first-order and total-order indices of shape
        (z, len(times), k), tagged with ``sobol_method``.

    Raises
    ------
    ConfigurationError
        Invalid request, detected before any sampling or integration.
    IntegrationError
        The solver failed for a sample row; the whole analysis is aborted.

    Warns
    -----
    MinorOrMajorDeviation
        First-order indices < -0.05 or total indices > 1.05.

    Notes
    -----
    **Computational Cost**:
    n * (k + 2) ODE integrations: the base matrices A and B plus one mixed
    matrix per parameter.

    Examples
    --------
    >>> from odesobol.krnl_models import lotka_volterra
    >>> res = ode_sobol(lotka_volterra, ['rIng', 'rGrow', 'rMort', 'assEff', 'K'],
    ...                 {'Prey': 1, 'Predator': 2}, [0.01] + list(range(1, 51)), n=500,
    ...                 rargs=[{'min': lo, 'max': hi} for lo, hi in
    ...                        zip([0.05, 0.05, 0.05, 0.05, 1], [1.0, 3.0, 0.95, 0.95, 20])],
    ...                 parallel_eval=True, parallel_eval_ncores=2)
    >>> res.ST('Prey')
    """
    if not callable(mod):
        raise ConfigurationError('"mod" must be a callable mod(t, y, pars)')
    specs = parameter_specs(pars, rfuncs, rargs)
    state_init = _check_state_init(state_init)
    times = _check_times(times)
    n = _check_n(n)
    if sobol_method not in SOBOL_METHODS:
        raise ConfigurationError(f"sobol_method must be one of {SOBOL_METHODS}, got {sobol_method!r}")
    check_ode_method(ode_method)
    workers = _check_workers(parallel_eval, parallel_eval_ncores)

    pars = tuple(spec.name for spec in specs)
    k, z = len(pars), len(state_init)
    mode = 'single-core' if workers is None else f'parallel ({workers} workers)'
    logger.info(
        f"Running ODE-Sobol ({sobol_method}) with n={n}, {k} parameters, {z} state variables, "
        f"{len(times)} timepoints: {n * (k + 2)} integrations in {mode}"
    )

    rng = np.random.default_rng(seed)
    A, B = sample_matrices(specs, n, rng)
    mixed = build_matrices(A, B, sobol_method)

    X = np.concatenate([A, B, mixed.reshape(k * n, k)], axis=0)
    batch = evaluate_batch(mod, X, pars, state_init, times, ode_method, workers, rtol, atol)
    batches = batch.split(n)
    logger.debug(f"Split {batch.rows} trajectories into {len(batches)} batches of {n}")

    y_A, y_B = batches[0].values, batches[1].values
    y_mixed = np.stack([b.values for b in batches[2:]])
    S1, ST = _ESTIMATORS[sobol_method](y_A, y_B, y_mixed)
    S1, ST = correct_deviations(S1, ST, state_init, times, pars, stacklevel=3)

    return SobolResult(
        sobol_method=sobol_method,
        pars=pars,
        states=tuple(state_init),
        times=times,
        first_order=S1,
        total_order=ST,
    )


_GSA_DEFAULTS = {
    'samp': 1000,
    'rfuncs': 'runif',
    'rargs': None,
    'method': 'Martinez',
    'ode': 'lsoda',
    'multi': False,
    'seed': None,
    'rtol': 1e-6,
    'atol': 1e-8,
    'plt': False,
    'xlsx': False,
    'path': None,
}
_GSA_REQUIRED = ('pars', 'init', 'times')


def _workers_from_multi(multi):
    if multi is False or multi is None:
        return False, None
    if isinstance(multi, bool):
        return True, None
    if isinstance(multi, Integral):
        return True, multi
    if isinstance(multi, float) and 0 < multi <= 1:
        return True, max(1, int(np.floor((os.cpu_count() or 1) * multi)))
    raise ConfigurationError(
        f"'multi' must be False, a worker count or a fraction of CPUs in (0, 1], got {multi!r}"
    )


def sensa(gsa, mod):
    """
    Run an ODE-Sobol analysis from a settings dictionary.

    Parameters
    ----------
    gsa : dict
        Global sensitivity analysis settings:
            - 'pars' : list[str]
                Parameter names (required).
            - 'init' : dict[str, float]
                Named initial state (required).
            - 'times' : list[float]
                Timepoints > 0 (required).
            - 'samp' : int
                Monte Carlo sample size n (default: 1000).
            - 'rfuncs' : str or list[str]
                Distribution identifiers.
            - 'rargs' : dict or list[dict]
                Distribution arguments.
            - 'method' : str
                'Jansen' or 'Martinez' (default).
            - 'ode' : str
                Integration method (default: 'lsoda').
            - 'multi' : False, int or float, optional
                Parallel execution: False=single-core, int=worker count,
                0.0-1.0=fraction of CPUs to use.
            - 'seed' : int, optional
                Sampling seed.
            - 'rtol', 'atol' : float, optional
                Solver tolerances.
            - 'plt' : bool
                Save Sobol plots after the run.
            - 'xlsx' : bool
                Export the indices to 'sobol_results.xlsx'.
            - 'path' : str, optional
                Output directory (default: cwd).
    mod : callable
        Right-hand side ``mod(t, y, pars)``.

    Returns
    -------
    SobolResult

    Examples
    --------
    >>> gsa = {'pars': ['p'], 'init': {'x': 1.0}, 'times': [1.0],
    ...        'samp': 2000, 'rargs': {'min': 0.5, 'max': 1.5}, 'multi': 0.5}
    >>> result = sensa(gsa, exponential_decay)
    """
    unknown = sorted(set(gsa) - set(_GSA_DEFAULTS) - set(_GSA_REQUIRED))
    if unknown:
        raise ConfigurationError(f"Unknown settings {unknown}")
    missing = [key for key in _GSA_REQUIRED if key not in gsa]
    if missing:
        raise ConfigurationError(f"Missing required settings {missing}")

    settings = {**_GSA_DEFAULTS, **gsa}
    parallel_eval, ncores = _workers_from_multi(settings['multi'])

    result = ode_sobol(
        mod,
        settings['pars'],
        settings['init'],
        settings['times'],
        n=settings['samp'],
        rfuncs=settings['rfuncs'],
        rargs=settings['rargs'],
        sobol_method=settings['method'],
        ode_method=settings['ode'],
        parallel_eval=parallel_eval,
        parallel_eval_ncores=ncores,
        seed=settings['seed'],
        rtol=settings['rtol'],
        atol=settings['atol'],
    )

    path = Path(settings['path']) if settings['path'] is not None else Path.cwd()
    if settings['plt']:
        import matplotlib.pyplot as plt
        from odesobol.plt_utils import plot_sobol_results
        for fig in plot_sobol_results(result, path=path):
            plt.close(fig)
    if settings['xlsx']:
        from odesobol.log_utils import save_to_xlsx
        save_to_xlsx(result, path / 'sobol_results.xlsx')

    return result
