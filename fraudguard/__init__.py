"""Rule-based transaction fraud assessment with fast and slow paths."""

__version__ = "0.1.0"