"""Background operations for the lab control plane."""

from .expiry_sweeper import ExpirySweeper

__all__ = ['ExpirySweeper']
