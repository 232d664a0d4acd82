"""
Utility functions for the ARD estimation engine.
"""

from .warning_suppression import suppress_upstream_warnings

__all__ = ['suppress_upstream_warnings']
