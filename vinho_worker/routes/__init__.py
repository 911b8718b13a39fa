from .queue import router as queue_router

__all__ = ["queue_router"]
