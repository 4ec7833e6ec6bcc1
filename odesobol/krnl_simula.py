from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass
import logging

import numpy as np
from scipy.integrate import solve_ivp, ode

from odesobol.errors import ConfigurationError, IntegrationError

logger = logging.getLogger(__name__)

# identifier -> scipy.integrate.solve_ivp method
_SOLVE_IVP_METHODS = {
    'lsoda': 'LSODA',
    'lsodar': 'LSODA',
    'ode45': 'RK45',
    'ode23': 'RK23',
    'dop853': 'DOP853',
    'radau': 'Radau',
    'bdf': 'BDF',
}

# identifier -> VODE linear multistep family
_VODE_METHODS = {
    'vode': 'bdf',
    'lsode': 'bdf',
    'lsodes': 'bdf',
    'bdf_d': 'bdf',
    'adams': 'adams',
    'impAdams': 'adams',
    'impAdams_d': 'adams',
}


def _euler_step(f, t, y, h):
    return y + h * f(t, y)


def _rk4_step(f, t, y, h):
    k1 = f(t, y)
    k2 = f(t + h / 2, y + h / 2 * k1)
    k3 = f(t + h / 2, y + h / 2 * k2)
    k4 = f(t + h, y + h * k3)
    return y + h / 6 * (k1 + 2 * k2 + 2 * k3 + k4)


_FIXED_STEP_METHODS = {
    'euler': _euler_step,
    'rk4': _rk4_step,
}

ODE_METHODS = tuple(_SOLVE_IVP_METHODS) + tuple(_VODE_METHODS) + tuple(_FIXED_STEP_METHODS)


def check_ode_method(ode_method):
    """Raise ``ConfigurationError`` unless ``ode_method`` is a known integration method."""
    if ode_method not in ODE_METHODS:
        raise ConfigurationError(
            f"Unknown ode_method {ode_method!r}. Choose from {list(ODE_METHODS)}"
        )
    return ode_method


@dataclass(frozen=True, eq=False)
class TrajectoryBatch:
    """
    State trajectories of every row of one sample matrix.

    Attributes
    ----------
    values : np.ndarray, shape (n, len(times), z)
        Axis 0 is the sample row (same order as the sample matrix), axis 1
        the timepoint and axis 2 the state variable.
    times : np.ndarray, shape (len(times),)
        Observation times, ascending.
    states : tuple[str, ...]
        State variable names in axis-2 order.
    """

    values: np.ndarray
    times: np.ndarray
    states: tuple

    @property
    def rows(self):
        return self.values.shape[0]

    def output(self, state, time_index):
        """Length-n output vector of ``state`` at ``times[time_index]``."""
        return self.values[:, time_index, self.states.index(state)]

    def split(self, rows):
        """Cut the batch into consecutive batches of ``rows`` rows each."""
        if self.rows % rows:
            raise ValueError(f"Cannot split {self.rows} trajectories into batches of {rows}")
        return [
            TrajectoryBatch(self.values[i:i + rows], self.times, self.states)
            for i in range(0, self.rows, rows)
        ]


def simula(mod, pars, y0, times, ode_method='lsoda', rtol=1e-6, atol=1e-8):
    """
    Integrate the ODE model for a single parameter row.

    Parameters
    ----------
    mod : callable
        Right-hand side ``mod(t, y, pars) -> dy/dt``.
    pars : dict[str, float]
        Parameter row passed to ``mod``.
    y0 : np.ndarray, shape (z,)
        Initial state at t = 0.
    times : np.ndarray
        Ascending, strictly positive observation times.
    ode_method : str, optional
        One of ``ODE_METHODS`` (default: 'lsoda').
    rtol, atol : float, optional
        Tolerances of the adaptive solvers.

    Returns
    -------
    trajectory : np.ndarray, shape (len(times), z)
        State at every observation time; t = 0 is not included.

    Raises
    ------
    IntegrationError
        If the solver reports failure, the model raises, or the trajectory
        contains non-finite values.

    Notes
    -----
    **Solver Backends**:
        - 'lsoda', 'lsodar', 'ode45', 'ode23', 'dop853', 'radau', 'bdf':
          ``scipy.integrate.solve_ivp`` over [0, max(times)] with ``t_eval=times``.
        - 'vode', 'lsode', 'lsodes', 'bdf_d' (BDF) and 'adams', 'impAdams',
          'impAdams_d' (Adams): ``scipy.integrate.ode`` VODE integrator,
          integrated from one observation time to the next.
        - 'euler', 'rk4': fixed-step schemes taking exactly one step between
          consecutive observation times (starting at t = 0).
    """
    y0 = np.asarray(y0, dtype=float)
    times = np.asarray(times, dtype=float)

    def rhs(t, y):
        return np.asarray(mod(t, y, pars), dtype=float).reshape(-1)

    try:
        if ode_method in _SOLVE_IVP_METHODS:
            result = solve_ivp(
                rhs,
                [0.0, times[-1]],
                y0,
                method=_SOLVE_IVP_METHODS[ode_method],
                t_eval=times,
                rtol=rtol,
                atol=atol,
            )
            if not result.success:
                raise IntegrationError(f"Solver '{ode_method}' failed: {result.message}", pars)
            trajectory = result.y.T

        elif ode_method in _VODE_METHODS:
            integrator = ode(rhs).set_integrator(
                'vode', method=_VODE_METHODS[ode_method], rtol=rtol, atol=atol, nsteps=5000
            )
            integrator.set_initial_value(y0, 0.0)
            trajectory = np.empty((len(times), len(y0)))
            for i, t in enumerate(times):
                trajectory[i] = integrator.integrate(t)
                if not integrator.successful():
                    raise IntegrationError(
                        f"Solver '{ode_method}' failed at t={t} (return code {integrator.get_return_code()})",
                        pars,
                    )

        else:
            step = _FIXED_STEP_METHODS[ode_method]
            trajectory = np.empty((len(times), len(y0)))
            t_prev, y = 0.0, y0
            for i, t in enumerate(times):
                y = step(rhs, t_prev, y, t - t_prev)
                trajectory[i] = y
                t_prev = t

    except IntegrationError:
        raise
    except Exception as exc:
        raise IntegrationError(f"Model evaluation with solver '{ode_method}' raised {exc!r}", pars) from exc

    if trajectory.shape != (len(times), len(y0)):
        raise IntegrationError(
            f"Solver '{ode_method}' returned a trajectory of shape {trajectory.shape}, "
            f"expected {(len(times), len(y0))}",
            pars,
        )
    if not np.all(np.isfinite(trajectory)):
        raise IntegrationError(f"Solver '{ode_method}' produced non-finite states", pars)
    return trajectory


def _process_sample_chunk(sample_chunk, mod, pars, y0, times, ode_method, rtol, atol):
    # Worker entry point: one trajectory per row, in row order.
    trajectories = np.empty((len(sample_chunk), len(times), len(y0)))
    for i, row in enumerate(sample_chunk):
        theta = {name: float(value) for name, value in zip(pars, row)}
        trajectories[i] = simula(mod, theta, y0, times, ode_method, rtol, atol)
    return trajectories


def evaluate_batch(mod, X, pars, state_init, times, ode_method='lsoda', workers=None,
                   rtol=1e-6, atol=1e-8):
    """
    Integrate the model for every row of a sample matrix.

    Parameters
    ----------
    mod : callable
        Right-hand side ``mod(t, y, pars) -> dy/dt``. Must be a module-level
        function when ``workers`` is given, so it can be sent to the workers.
    X : np.ndarray, shape (rows, k)
        Sample matrix; column j holds parameter ``pars[j]``.
    pars : sequence of str
        Parameter names.
    state_init : dict[str, float]
        Ordered initial state.
    times : np.ndarray
        Ascending, strictly positive observation times.
    ode_method : str, optional
        Integration method identifier.
    workers : int, optional
        Number of worker processes. ``None`` evaluates serially in the
        calling process.
    rtol, atol : float, optional
        Solver tolerances.

    Returns
    -------
    TrajectoryBatch
        ``rows`` trajectories in the row order of ``X``.

    Raises
    ------
    IntegrationError
        As soon as any row fails. Pending chunks are cancelled and no partial
        result is returned.

    Notes
    -----
    **Parallel Execution**:
    ``X`` is split into ``workers`` contiguous chunks, one task per chunk.
    Chunk results are concatenated in submission order, never completion
    order, so the batch is identical to the serial one. The process pool
    lives only for the duration of this call.
    """
    X = np.asarray(X, dtype=float)
    times = np.asarray(times, dtype=float)
    states = tuple(state_init)
    y0 = np.array([state_init[name] for name in states], dtype=float)
    pars = list(pars)

    if workers is None:
        logger.info(f"Integrating {len(X)} parameter rows in single-core")
        values = _process_sample_chunk(X, mod, pars, y0, times, ode_method, rtol, atol)
        return TrajectoryBatch(values, times, states)

    sample_chunks = [chunk for chunk in np.array_split(X, workers) if len(chunk)]
    logger.info(f"Integrating {len(X)} parameter rows in parallel on {workers} workers")
    logger.debug(f"Chunk sizes: {[len(chunk) for chunk in sample_chunks]}")

    with ProcessPoolExecutor(max_workers=workers) as executor:
        futures = [
            executor.submit(_process_sample_chunk, chunk, mod, pars, y0, times, ode_method, rtol, atol)
            for chunk in sample_chunks
        ]
        try:
            results = [future.result() for future in futures]
        except BaseException:
            for future in futures:
                future.cancel()
            raise

    values = np.concatenate(results, axis=0)
    return TrajectoryBatch(values, times, states)
