"""
API module.
Contains the FastAPI operator application and its routes.
"""

from delayed.api.main import create_app, run

__all__ = ["create_app", "run"]
