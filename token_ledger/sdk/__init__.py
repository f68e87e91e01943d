"""
SDK for the token ledger.

Provides metered wrappers that charge tokens around feature calls.
"""

from .metered import MeteredFeature

__all__ = ["MeteredFeature"]
