"""Checkpoint/log reconciliation and message fingerprints."""

from chatledger.reconcile.fingerprint import fingerprint, hidden_log_events
from chatledger.reconcile.reconciler import extract_text, normalize_tool_calls, reconcile

__all__ = ["extract_text", "fingerprint", "hidden_log_events", "normalize_tool_calls", "reconcile"]
