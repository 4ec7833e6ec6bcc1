from __future__ import annotations

import warnings

import numpy as np
import pandas as pd
import pytest

from odesobol.errors import ConfigurationError, IntegrationError
from odesobol.krnl_models import (
    blow_up,
    bounds_to_rargs,
    exponential_decay,
    inert_decay,
    inert_decay_pars,
    lotka_volterra,
    lotka_volterra_pars,
)
from odesobol.sc_sensa import SobolResult, jansen_indices, martinez_indices, ode_sobol, sensa

DECAY = dict(pars=["p"], state_init={"x": 1.0}, times=[1.0], rargs={"min": 0.5, "max": 1.5})


def _never_called(t, y, pars):
    raise AssertionError("the model must not be integrated for an invalid request")


def _lotka(**kwargs) -> SobolResult:
    names, pmin, pmax = lotka_volterra_pars()
    options = dict(n=20, rargs=bounds_to_rargs(pmin, pmax), seed=11)
    options.update(kwargs)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        return ode_sobol(lotka_volterra, names, {"Prey": 1.0, "Predator": 2.0}, [1.0, 2.0, 3.0], **options)


# ---------------------------------------------------------------- estimators


def test_martinez_limits() -> None:
    rng = np.random.default_rng(0)
    y_A = rng.normal(size=(50, 2, 3))
    y_B = rng.normal(size=(50, 2, 3))
    y_D = np.stack([y_B, y_A])

    S1, ST = martinez_indices(y_A, y_B, y_D)
    assert S1.shape == ST.shape == (3, 2, 2)
    # D_0 == B gives S1 = 1; D_1 == A gives ST = 0.
    np.testing.assert_allclose(S1[:, :, 0], 1.0)
    np.testing.assert_allclose(ST[:, :, 1], 0.0, atol=1e-12)


def test_jansen_limits() -> None:
    rng = np.random.default_rng(1)
    y_A = rng.normal(size=(40, 3, 2))
    y_B = rng.normal(size=(40, 3, 2))
    y_C = np.stack([y_A, y_B])

    S1, ST = jansen_indices(y_A, y_B, y_C)
    assert S1.shape == ST.shape == (2, 3, 2)
    V = np.var(np.concatenate([y_A, y_B]), axis=0, ddof=1)
    # C_0 == A: no mismatch term, S1 = Var(Y_A) / V. C_1 == B: ST = 0.
    np.testing.assert_allclose(S1[:, :, 0], (np.var(y_A, axis=0, ddof=1) / V).T)
    np.testing.assert_allclose(ST[:, :, 1], 0.0)


def test_zero_variance_gives_nan_without_error() -> None:
    y = np.ones((5, 1, 1))
    S1, ST = martinez_indices(y, y, y[np.newaxis])
    assert np.isnan(S1).all() and np.isnan(ST).all()
    S1, ST = jansen_indices(y, y, y[np.newaxis])
    assert np.isnan(S1).all() and np.isnan(ST).all()


# ---------------------------------------------------------------- analysis


def test_result_covers_every_state_time_and_parameter() -> None:
    res = _lotka()
    assert res.shape == (2, 3, 5)
    assert res.states == ("Prey", "Predator")
    assert res.pars == tuple(lotka_volterra_pars()[0])
    assert res.sobol_method == "Martinez"
    assert res.first_order.size + res.total_order.size == 2 * 3 * 5 * 2


def test_single_parameter_decay_martinez() -> None:
    res = ode_sobol(exponential_decay, n=2000, seed=42, **DECAY)
    assert res.shape == (1, 1, 1)
    assert abs(res.first_order[0, 0, 0] - 1.0) < 0.1
    assert abs(res.total_order[0, 0, 0] - 1.0) < 0.1


def test_single_parameter_decay_jansen() -> None:
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        res = ode_sobol(exponential_decay, n=1000, seed=5, sobol_method="Jansen", **DECAY)
    assert res.sobol_method == "Jansen"
    assert abs(res.first_order[0, 0, 0] - 1.0) < 0.15
    assert abs(res.total_order[0, 0, 0] - 1.0) < 0.15


def test_inert_parameter_gets_near_zero_indices() -> None:
    names, pmin, pmax = inert_decay_pars()
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        res = ode_sobol(inert_decay, names, {"x": 1.0}, [1.0, 2.0], n=1000,
                        rargs=bounds_to_rargs(pmin, pmax), seed=9)
    # D_b equals A in every output, so ST_b vanishes exactly.
    np.testing.assert_allclose(res.total_order[:, :, 1], 0.0, atol=1e-9)
    assert np.all(np.abs(res.first_order[:, :, 1]) < 0.15)
    assert np.all(res.total_order[:, :, 0] > 0.8)


def test_same_seed_reproduces_result() -> None:
    first = _lotka(seed=123)
    second = _lotka(seed=123)
    assert np.array_equal(first.first_order, second.first_order, equal_nan=True)
    assert np.array_equal(first.total_order, second.total_order, equal_nan=True)


def test_parallel_result_matches_serial() -> None:
    serial = _lotka(n=10)
    parallel = _lotka(n=10, parallel_eval=True, parallel_eval_ncores=2)
    default_cores = _lotka(n=10, parallel_eval=True)
    for res in (parallel, default_cores):
        assert np.array_equal(serial.first_order, res.first_order, equal_nan=True)
        assert np.array_equal(serial.total_order, res.total_order, equal_nan=True)


def test_minimum_sample_size() -> None:
    res = ode_sobol(exponential_decay, n=2, seed=1, **DECAY)
    assert res.shape == (1, 1, 1)
    for n in (0, 1, -3, 2.5, True, "10"):
        with pytest.raises(ConfigurationError, match='"n"'):
            ode_sobol(_never_called, n=n, **DECAY)


def test_integral_float_sample_size_accepted() -> None:
    res = ode_sobol(exponential_decay, n=10.0, seed=1, **DECAY)
    assert res.shape == (1, 1, 1)


def test_times_are_sorted() -> None:
    kwargs = dict(DECAY, times=[3.0, 1.0, 2.0])
    shuffled = ode_sobol(exponential_decay, n=50, seed=4, **kwargs)
    ordered = ode_sobol(exponential_decay, n=50, seed=4, **dict(DECAY, times=[1.0, 2.0, 3.0]))
    np.testing.assert_array_equal(shuffled.times, [1.0, 2.0, 3.0])
    assert np.array_equal(shuffled.first_order, ordered.first_order)
    assert np.array_equal(shuffled.total_order, ordered.total_order)


@pytest.mark.parametrize("times", [[0.0, 1.0], [-1.0, 2.0], [1.0, 1.0], [], [1.0, np.nan], "soon"])
def test_invalid_times_rejected(times) -> None:
    with pytest.raises(ConfigurationError, match='"times"'):
        ode_sobol(_never_called, **dict(DECAY, times=times))


@pytest.mark.parametrize(
    "state_init",
    [{}, [1.0], {"x": "one"}, {"x": np.inf}, pd.Series([1.0, 2.0], index=["x", "x"])],
)
def test_invalid_state_init_rejected(state_init) -> None:
    with pytest.raises(ConfigurationError):
        ode_sobol(_never_called, **dict(DECAY, state_init=state_init))


def test_series_state_init_accepted() -> None:
    res = ode_sobol(exponential_decay, n=20, seed=2, **dict(DECAY, state_init=pd.Series({"x": 1.0})))
    assert res.states == ("x",)


def test_invalid_requests_fail_before_integration() -> None:
    with pytest.raises(ConfigurationError, match="sobol_method"):
        ode_sobol(_never_called, sobol_method="Saltelli", **DECAY)
    with pytest.raises(ConfigurationError, match="ode_method"):
        ode_sobol(_never_called, ode_method="magic", **DECAY)
    with pytest.raises(ConfigurationError, match="rfuncs"):
        ode_sobol(_never_called, ["a", "b", "c", "d", "e"], {"x": 1.0}, [1.0], rfuncs=["runif"] * 3)
    with pytest.raises(ConfigurationError, match="parallel_eval"):
        ode_sobol(_never_called, parallel_eval="yes", **DECAY)
    with pytest.raises(ConfigurationError, match="parallel_eval_ncores"):
        ode_sobol(_never_called, parallel_eval=True, parallel_eval_ncores=0, **DECAY)
    with pytest.raises(ConfigurationError, match="mod"):
        ode_sobol("not a model", **DECAY)


def test_integration_failure_aborts_analysis() -> None:
    with pytest.raises(IntegrationError):
        ode_sobol(blow_up, ["c"], {"x": 1.0}, [2.0], n=4, rargs={"min": 1.0, "max": 2.0},
                  ode_method="ode45", seed=0)


# ---------------------------------------------------------------- result object


def test_result_frames() -> None:
    res = _lotka()
    s1 = res.S1("Prey")
    assert list(s1.index) == list(res.pars)
    assert list(s1.columns) == [1.0, 2.0, 3.0]
    np.testing.assert_array_equal(s1.to_numpy(), res.first_order[0].T)
    np.testing.assert_array_equal(res["Predator"]["ST"].to_numpy(), res.total_order[1].T)
    assert list(res) == ["Prey", "Predator"]
    assert len(res) == 2
    with pytest.raises(KeyError):
        res.S1("Zombie")


def test_result_long_table() -> None:
    res = _lotka()
    frame = res.to_frame()
    assert list(frame.columns) == ["state", "time", "parameter", "S1", "ST"]
    assert len(frame) == 2 * 3 * 5
    row = frame[(frame.state == "Predator") & (frame.time == 2.0) & (frame.parameter == "K")].iloc[0]
    assert row.S1 == res.first_order[1, 1, 4] or np.isnan(row.S1)


def test_result_arrays_are_read_only() -> None:
    res = _lotka()
    with pytest.raises(ValueError):
        res.first_order[0, 0, 0] = 0.5


# ---------------------------------------------------------------- settings dictionary


def test_sensa_runs_from_settings(tmp_path) -> None:
    gsa = {"pars": ["p"], "init": {"x": 1.0}, "times": [1.0, 2.0], "samp": 200,
           "rargs": {"min": 0.5, "max": 1.5}, "seed": 3, "method": "Jansen",
           "xlsx": True, "path": str(tmp_path)}
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        res = sensa(gsa, exponential_decay)
    assert res.sobol_method == "Jansen"
    assert res.shape == (1, 2, 1)
    assert (tmp_path / "sobol_results.xlsx").exists()


def test_sensa_multi_matches_serial() -> None:
    gsa = {"pars": ["p"], "init": {"x": 1.0}, "times": [1.0], "samp": 30,
           "rargs": {"min": 0.5, "max": 1.5}, "seed": 8}
    serial = sensa(gsa, exponential_decay)
    parallel = sensa(dict(gsa, multi=2), exponential_decay)
    fraction = sensa(dict(gsa, multi=0.5), exponential_decay)
    for res in (parallel, fraction):
        assert np.array_equal(serial.first_order, res.first_order, equal_nan=True)


def test_sensa_rejects_bad_settings() -> None:
    with pytest.raises(ConfigurationError, match="Unknown settings"):
        sensa({"pars": ["p"], "init": {"x": 1.0}, "times": [1.0], "sample": 10}, _never_called)
    with pytest.raises(ConfigurationError, match="Missing required"):
        sensa({"pars": ["p"], "init": {"x": 1.0}}, _never_called)
    with pytest.raises(ConfigurationError, match="multi"):
        sensa({"pars": ["p"], "init": {"x": 1.0}, "times": [1.0], "multi": 1.5}, _never_called)


@pytest.mark.parametrize("method", ["lsode", "lsodes", "lsodar", "bdf_d", "impAdams", "impAdams_d"])
def test_ode_solver_names_from_desolve_accepted(method: str) -> None:
    res = ode_sobol(exponential_decay, n=20, seed=6, ode_method=method, **DECAY)
    assert res.shape == (1, 1, 1)
    # D_1 equals B for a single parameter, so S1 is an exact correlation of 1.
    assert res.first_order[0, 0, 0] == pytest.approx(1.0)
