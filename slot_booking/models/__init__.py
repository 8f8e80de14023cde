# Import all models to ensure they are registered with SQLAlchemy
from . import booking, slot, user

__all__ = [
    "booking",
    "slot",
    "user",
]
