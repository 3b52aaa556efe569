from .labs import create_labs_router

__all__ = ['create_labs_router']
