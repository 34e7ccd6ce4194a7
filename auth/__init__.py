"""auth/ -- Authentication and session-security package for Gatekeeper.

Layer rule: auth/ imports stdlib, third-party libraries, and core/.
It does NOT import from api/ or notify/ at runtime (the email notifier is
injected). api/ imports from auth/, not the other way around.
"""
