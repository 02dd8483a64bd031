# API routes
from src.api.routes import agents

__all__ = ["agents"]
