"""Session façade wiring store, reconciler and stream access for one open session."""
from .facade import SessionFacade

__all__ = ["SessionFacade"]
