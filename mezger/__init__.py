"""mezger — listing harvester and run-to-run reconciliation engine."""

__version__ = "0.3.0"
