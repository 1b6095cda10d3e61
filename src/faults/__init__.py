"""
Deterministic fault injection: while a fault kind is selected every generation
request is answered with that kind's canned status and error body.
"""

from .catalog import ERROR_CATALOG, ErrorCatalogEntry, ErrorKind, error_response_for
from .simulator import ErrorSimulator, SimulatedFaultError

__all__ = [
    "ERROR_CATALOG",
    "ErrorCatalogEntry",
    "ErrorKind",
    "ErrorSimulator",
    "SimulatedFaultError",
    "error_response_for",
]
