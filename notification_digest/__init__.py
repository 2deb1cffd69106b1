"""
Notification digest service.

Collapses bursts of notification events into debounced per-user digests
delivered in-app and by email.
"""

__version__ = "1.0.0"
