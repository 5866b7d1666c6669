"""Real-time control server for RLBot matches."""

__version__ = "0.1.0"
