from collections import namedtuple
from dataclasses import dataclass, field
from types import MappingProxyType
from collections.abc import Mapping
import logging

import numpy as np
from scipy import stats

from odesobol.errors import ConfigurationError

logger = logging.getLogger(__name__)

_Distribution = namedtuple('_Distribution', ['func', 'params', 'defaults'])

_REQUIRED = object()


def _unif(n, rng, min, max):
    return stats.uniform(loc=min, scale=max - min).rvs(size=n, random_state=rng)


def _norm(n, rng, mean, sd):
    return stats.norm(loc=mean, scale=sd).rvs(size=n, random_state=rng)


def _lognorm(n, rng, meanlog, sdlog):
    return stats.lognorm(s=sdlog, scale=np.exp(meanlog)).rvs(size=n, random_state=rng)


def _exp(n, rng, rate):
    return stats.expon(scale=1.0 / rate).rvs(size=n, random_state=rng)


def _gamma(n, rng, shape, rate):
    return stats.gamma(a=shape, scale=1.0 / rate).rvs(size=n, random_state=rng)


def _beta(n, rng, shape1, shape2):
    return stats.beta(a=shape1, b=shape2).rvs(size=n, random_state=rng)


def _triang(n, rng, min, max, mode):
    width = max - min
    return stats.triang(c=(mode - min) / width, loc=min, scale=width).rvs(size=n, random_state=rng)


def _logunif(n, rng, min, max):
    return stats.loguniform(a=min, b=max).rvs(size=n, random_state=rng)


_DISTRIBUTIONS = {}
_ALIASES = {}


def register_distribution(name, func, params, aliases=()):
    """
    Register a sampling function under a distribution identifier.

    Parameters
    ----------
    name : str
        Identifier used in ``rfuncs``.
    func : callable
        ``func(n, rng, **args) -> array_like`` returning ``n`` draws. ``rng``
        is the ``numpy.random.Generator`` owned by the analysis call.
    params : dict[str, float or None]
        Accepted argument names mapped to their default value; ``None`` marks
        a required argument.
    aliases : iterable of str, optional
        Alternative identifiers resolving to the same sampler.

    Examples
    --------
    >>> register_distribution('halfnorm', lambda n, rng, sd: np.abs(rng.normal(0, sd, n)),
    ...                       {'sd': 1.0})
    """
    if not callable(func):
        raise ConfigurationError(f"Sampler for distribution '{name}' is not callable")
    defaults = {key: (_REQUIRED if value is None else float(value)) for key, value in params.items()}
    _DISTRIBUTIONS[name] = _Distribution(func, tuple(params), defaults)
    _ALIASES[name] = name
    for alias in aliases:
        _ALIASES[alias] = name


register_distribution('unif', _unif, {'min': 0.0, 'max': 1.0}, aliases=('runif', 'uniform'))
register_distribution('norm', _norm, {'mean': 0.0, 'sd': 1.0}, aliases=('rnorm', 'normal'))
register_distribution('lognorm', _lognorm, {'meanlog': 0.0, 'sdlog': 1.0}, aliases=('rlnorm',))
register_distribution('exp', _exp, {'rate': 1.0}, aliases=('rexp',))
register_distribution('gamma', _gamma, {'shape': None, 'rate': 1.0}, aliases=('rgamma',))
register_distribution('beta', _beta, {'shape1': None, 'shape2': None}, aliases=('rbeta',))
register_distribution('triang', _triang, {'min': None, 'max': None, 'mode': None})
register_distribution('logunif', _logunif, {'min': None, 'max': None})


def resolve_distribution(name):
    """Return the canonical identifier for ``name`` or raise ``ConfigurationError``."""
    if not isinstance(name, str) or name not in _ALIASES:
        raise ConfigurationError(
            f"Unknown distribution '{name}'. Choose from {sorted(_ALIASES)}"
        )
    return _ALIASES[name]


@dataclass(frozen=True)
class ParameterSpec:
    """
    Sampling distribution of one model parameter.

    The distribution identifier is resolved against the registry and the
    argument record is checked against the names that distribution accepts
    when the instance is constructed. Missing optional arguments are filled with
    their defaults.

    Attributes
    ----------
    name : str
        Parameter name, as passed to the model in ``pars``.
    dist : str
        Canonical distribution identifier.
    args : Mapping[str, float]
        Read-only argument record, e.g. ``{'min': 0.5, 'max': 1.5}``.
    """

    name: str
    dist: str = 'unif'
    args: Mapping = field(default_factory=dict)

    def __post_init__(self):
        if not isinstance(self.name, str) or not self.name:
            raise ConfigurationError(f"Parameter names must be non-empty strings, got {self.name!r}")
        dist = resolve_distribution(self.dist)
        if not isinstance(self.args, Mapping):
            raise ConfigurationError(
                f"Arguments for parameter '{self.name}' must be a mapping of names to values"
            )

        spec = _DISTRIBUTIONS[dist]
        unknown = sorted(set(self.args) - set(spec.params))
        if unknown:
            raise ConfigurationError(
                f"Distribution '{dist}' of parameter '{self.name}' does not accept {unknown}; "
                f"expected arguments are {list(spec.params)}"
            )

        args = {}
        for key in spec.params:
            value = self.args.get(key, spec.defaults[key])
            if value is _REQUIRED:
                raise ConfigurationError(
                    f"Distribution '{dist}' of parameter '{self.name}' requires argument '{key}'"
                )
            try:
                args[key] = float(value)
            except (TypeError, ValueError):
                raise ConfigurationError(
                    f"Argument '{key}' of parameter '{self.name}' must be a real number, got {value!r}"
                ) from None

        object.__setattr__(self, 'dist', dist)
        object.__setattr__(self, 'args', MappingProxyType(args))

    def draw(self, n, rng):
        """Draw ``n`` values of this parameter with generator ``rng``."""
        func = _DISTRIBUTIONS[self.dist].func
        try:
            values = np.asarray(func(n, rng, **self.args), dtype=float).reshape(-1)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(
                f"Sampling parameter '{self.name}' from '{self.dist}' with {dict(self.args)} failed: {exc}"
            ) from exc

        if values.shape != (n,) or not np.all(np.isfinite(values)):
            raise ConfigurationError(
                f"Distribution '{self.dist}' with {dict(self.args)} did not return {n} finite "
                f"values for parameter '{self.name}'"
            )
        return values


def _broadcast(values, k, label):
    if isinstance(values, (str, Mapping)):
        values = [values]
    values = list(values)
    if len(values) == 1:
        return values * k
    if len(values) != k:
        raise ConfigurationError(
            f'Argument "{label}" must be of length 1 or of the same length as "pars" ({k}), '
            f'got length {len(values)}'
        )
    return values


def parameter_specs(pars, rfuncs='runif', rargs=None):
    """
    Build the ordered list of ``ParameterSpec`` for an analysis.

    Parameters
    ----------
    pars : sequence of str
        Names of the k parameters, in column order.
    rfuncs : str or sequence of str, optional
        Distribution identifier(s); length 1 (broadcast) or k.
    rargs : Mapping or sequence of Mapping, optional
        Argument record(s); length 1 (broadcast) or k. ``None`` uses the
        registered defaults of each distribution (``{'min': 0, 'max': 1}`` for
        the uniform).

    Returns
    -------
    list[ParameterSpec]

    Raises
    ------
    ConfigurationError
        If names are missing or repeated, if ``rfuncs``/``rargs`` have a
        length other than 1 or k, or if a distribution or argument name is
        not recognised.
    """
    if isinstance(pars, str):
        pars = [pars]
    pars = list(pars)
    if not pars:
        raise ConfigurationError('At least one parameter is required')
    if len(set(pars)) != len(pars):
        raise ConfigurationError(f'Parameter names must be unique, got {pars}')

    if rargs is None:
        rargs = {}
    k = len(pars)
    rfuncs = _broadcast(rfuncs, k, 'rfuncs')
    rargs = _broadcast(rargs, k, 'rargs')

    return [ParameterSpec(name, dist, args) for name, dist, args in zip(pars, rfuncs, rargs)]


def sample_matrices(specs, n, rng):
    """
    Draw the two independent base design matrices.

    Matrix A is filled column by column first, then matrix B, so the two
    never share draws.

    Parameters
    ----------
    specs : list[ParameterSpec]
        One spec per column.
    n : int
        Number of rows.
    rng : numpy.random.Generator
        Random source for all draws.

    Returns
    -------
    A, B : np.ndarray, shape (n, k)
    """
    A = np.column_stack([spec.draw(n, rng) for spec in specs])
    B = np.column_stack([spec.draw(n, rng) for spec in specs])
    logger.debug(f"Sampled base matrices A and B of shape {A.shape}")
    return A, B


def build_matrices(A, B, sobol_method):
    """
    Construct the mixed sample matrices required by a Sobol' estimator.

    Parameters
    ----------
    A, B : np.ndarray, shape (n, k)
        Base design matrices.
    sobol_method : {'Jansen', 'Martinez'}
        Estimator the matrices are built for.

    Returns
    -------
    mixed : np.ndarray, shape (k, n, k)
        ``mixed[j]`` is the matrix paired with parameter j:
            - Jansen: B with column j taken from A.
            - Martinez: A with column j taken from B.

    Notes
    -----
    Row order of A and B is preserved, which the estimator relies on to
    pair outputs sample by sample. Together with A and B the analysis
    integrates n * (k + 2) rows.
    """
    if sobol_method == 'Jansen':
        base, donor = B, A
    elif sobol_method == 'Martinez':
        base, donor = A, B
    else:
        raise ConfigurationError(f"sobol_method must be 'Jansen' or 'Martinez', got {sobol_method!r}")

    k = base.shape[1]
    mixed = np.repeat(base[np.newaxis, :, :], k, axis=0)
    for j in range(k):
        mixed[j, :, j] = donor[:, j]
    return mixed
