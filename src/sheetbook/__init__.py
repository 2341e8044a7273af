"""sheetbook -- tabular data workspace and monthly aggregation engine."""

__version__ = "0.1.0"
