"""Provisioning and lifecycle control plane for ephemeral lab sandboxes."""

__version__ = '0.1.0'
