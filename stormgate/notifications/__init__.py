"""
Notifications Package

Outbound templated email requests to the email integrator service. The
gateway never renders or sends mail itself; it asks the integrator to send a
named template and observes whether the request succeeded.
"""

from .email import NotificationChannel

__all__ = [
    "NotificationChannel",
]
