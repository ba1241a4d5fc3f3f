"""notify/ -- Outbound notifications (verification and password reset emails).

Sends never run on the request path: SessionService hands them to
NotificationDispatcher, which returns a Future and logs terminal failures.

Layer rule: notify/ imports from core/ only.
"""
