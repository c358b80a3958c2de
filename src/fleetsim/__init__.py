"""fleetsim - hardware-free drone fleet simulation engine."""

__version__ = "0.1.0"
