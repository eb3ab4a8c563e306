"""Cadence - runtime core for a resumable, observable agent run loop.

Drives one fallible task through a fixed phase vocabulary, retries each
failure class with bounded jittered backoff, and broadcasts every state
change as a versioned RuntimeMessage.
"""

__version__ = "0.4.0"

__all__ = ["__version__"]
