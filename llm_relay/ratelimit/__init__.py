"""
Rate Limiting

Per-client cooldown gate (delays, never rejects) and abuse counter
(observational, triggers operator alerts).
"""

from .limiter import RateLimiter, CooldownGate, AbuseCounter, AbuseWindow

__all__ = ["RateLimiter", "CooldownGate", "AbuseCounter", "AbuseWindow"]
