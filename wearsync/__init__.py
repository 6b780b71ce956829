"""wearsync - resumable wearable data sync engine."""

__version__ = "1.0.0"
