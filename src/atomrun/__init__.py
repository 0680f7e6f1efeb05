"""Task graph scheduler and sandboxed execution orchestrator."""

__version__ = "0.1.0"
