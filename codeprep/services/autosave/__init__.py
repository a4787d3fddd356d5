from .service import AutosaveController

__all__ = ["AutosaveController"]
