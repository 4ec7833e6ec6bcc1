"""
Exception and warning types raised by the ODE-Sobol pipeline.
"""


class ConfigurationError(ValueError):
    """Invalid or inconsistent analysis request, raised before any computation."""


class IntegrationError(RuntimeError):
    """
    The ODE solver failed for one sample row.

    Parameters
    ----------
    message : str
        Description of the failure.
    parameters : dict[str, float], optional
        Parameter row (name -> value) for which the integration failed.

    Notes
    -----
    Both arguments are forwarded to ``RuntimeError`` so that the exception
    survives pickling when raised inside a worker process.
    """

    def __init__(self, message, parameters=None):
        super().__init__(message, parameters)
        self.message = message
        self.parameters = parameters

    def __str__(self):
        if self.parameters is None:
            return self.message
        return f"{self.message} (parameters: {self.parameters})"


class MinorOrMajorDeviation(UserWarning):
    """Estimated Sobol' index lies implausibly far outside [0, 1]."""
