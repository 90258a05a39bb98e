"""Election forecast platform: vote-state mutations and live aggregation."""

__version__ = '1.0.0'
