"""auth/ -- Credential and session-lifecycle core for authcore.

Layer rule: auth/ imports from core/ plus third-party libraries.
It does NOT import from api/, cache/, or notify/; the cache and the
notification dispatcher are injected into SessionService.
api/ imports from auth/, not the other way around.
"""
