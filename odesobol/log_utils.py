from pathlib import Path
import logging
import sys

import pandas as pd

logger = logging.getLogger(__name__)


def configure_logger(name=None, level=logging.INFO):
    r"""
    Configure a logger with standard output formatting for ODE-Sobol runs.

    Existing handlers are removed to prevent duplicate log messages.

    Parameters
    ----------
    name : str, optional
        Logger name. If None, returns the root logger (default: None).
        Pass 'odesobol' to configure every module logger of the package.
    level : int, optional
        Logging level (default: logging.INFO).

    Returns
    -------
    logger : logging.Logger
        Configured logger instance.

    Notes
    -----
    **Handler Configuration**:
        - A StreamHandler is attached to sys.stdout (not sys.stderr).
        - Format: '%(levelname)s: %(message)s' (e.g., "INFO: Running ODE-Sobol ...").

    **Propagation**:
        Logger propagation is disabled to prevent messages from being passed
        to parent loggers.

    Examples
    --------
    >>> logger = configure_logger('odesobol', level=logging.DEBUG)
    >>> logger.info("Starting analysis")
    INFO: Starting analysis
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    if logger.hasHandlers():
        logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    formatter = logging.Formatter('%(levelname)s: %(message)s')
    handler.setFormatter(formatter)
    logger.addHandler(handler)

    logger.propagate = False
    return logger


def _sheet_name(state, kind):
    # Excel limits sheet names to 31 characters
    return f"{state}_{kind}"[:31]


def save_to_xlsx(result, path='sobol_results.xlsx'):
    """
    Export Sobol' indices to an Excel workbook.

    Parameters
    ----------
    result : SobolResult
        Output of ``ode_sobol``.
    path : str or pathlib.Path, optional
        Target file (default: 'sobol_results.xlsx' in the working directory).

    Returns
    -------
    path : pathlib.Path
        The written file.

    Notes
    -----
    **Excel Structure**:
    Two sheets per state variable, '{state}_S1' and '{state}_ST'
    (truncated to 31 characters). Each sheet has a 'time' column followed by
    one column per parameter, one row per timepoint. A final 'info' sheet
    records the estimator.
    """
    path = Path(path)
    sheets = {}
    for state in result.states:
        for kind, frame in (('S1', result.S1(state)), ('ST', result.ST(state))):
            table = frame.T.reset_index()
            table.columns = ['time'] + list(result.pars)
            sheets[_sheet_name(state, kind)] = table

    info = pd.DataFrame({'key': ['sobol_method'], 'value': [result.sobol_method]})

    with pd.ExcelWriter(path, engine='openpyxl') as writer:
        for sheet_name, df in sheets.items():
            df.to_excel(writer, sheet_name=sheet_name, index=False)
        info.to_excel(writer, sheet_name='info', index=False)

    logger.info(f"Sobol results saved to: {path}")
    return path
