"""Real-time meeting caption capture: extract, dedup, batch, and stream to a session coordinator."""

__version__ = "1.0.0"
