"""Clock helpers."""

from .clock import utc_now

__all__ = ["utc_now"]
