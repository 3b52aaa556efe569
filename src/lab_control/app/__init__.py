"""Lab control-plane FastAPI application."""

from .main import create_app
from .settings import LabControlSettings

__all__ = ['create_app', 'LabControlSettings']
