"""ralph-pilot: bounded iteration loop for external coding agents."""

__version__ = "0.4.0"
