"""
Task Queue

Persistent job queue, dead letter queue and TTL result cache driven by short,
externally scheduled processing ticks.
"""

__version__ = "1.0.0"
