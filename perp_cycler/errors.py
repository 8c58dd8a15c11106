"""
Exception taxonomy for the cycling engine.

Inside the trading loop every gateway error is caught at the call site and turned
into a skip, retry or continue decision. ConfigurationError and
UnsafeResidualPositionError end the process; main.py maps them to exit codes.
"""
from __future__ import annotations


class PerpCyclerError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(PerpCyclerError):
    """Invalid or incomplete configuration. Fatal at startup."""


class TransientGatewayError(PerpCyclerError):
    """Network/exchange failure. The current step is abandoned, the loop continues."""


class UnsafeResidualPositionError(PerpCyclerError):
    """A residual position could not be closed within the configured attempts."""

    def __init__(self, product_id: str, residual: float, attempts: int):
        self.product_id = product_id
        self.residual = residual
        self.attempts = attempts
        super().__init__(
            f"residual position {residual} on {product_id} still open after {attempts} close attempts"
        )


class ShutdownRequested(PerpCyclerError):
    """Operator asked the process to stop. No further orders may be placed."""
