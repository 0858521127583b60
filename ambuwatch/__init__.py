"""AmbuWatch core package: session artifact reconciliation and device stream access."""

__all__ = ["__version__"]
__version__ = "0.1.0"
