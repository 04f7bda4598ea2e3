"""
Memory layer: session store and presence session reconciliation
"""

from .session_store import SessionStore
from .reconciler import SessionReconciler

__all__ = ["SessionStore", "SessionReconciler"]
