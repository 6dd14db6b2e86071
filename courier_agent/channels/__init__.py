from .base import Channel
from .http import HttpChannel

__all__ = ["Channel", "HttpChannel"]
