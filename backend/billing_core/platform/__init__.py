"""
Platform utilities shared across the billing core.
"""

from billing_core.platform.clock import Clock, FixedClock, SystemClock, get_clock

__all__ = ["Clock", "FixedClock", "SystemClock", "get_clock"]
