"""perp-cycler: randomized open/hold/close position cycling for perpetual futures."""
__version__ = "1.0.0"
