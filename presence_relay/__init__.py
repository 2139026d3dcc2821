"""
Breathe Together presence relay - an anonymous presence aggregation service.

This package provides a stateless HTTP service where browser sessions announce
that they are present (optionally with a mood) and any client can ask how many
people are present and how their moods are distributed.
"""

__version__ = "0.2.0"
