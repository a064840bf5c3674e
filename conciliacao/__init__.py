"""Payment reconciliation core for card terminals (maquininhas)."""

__version__ = "1.0.0"
