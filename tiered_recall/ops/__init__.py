"""Operational helpers: structured telemetry."""

from .telemetry import new_run_id, log_step, log_transition, log_fallback

__all__ = ["new_run_id", "log_step", "log_transition", "log_fallback"]
