"""
notify/ -- Outbound notification channel (email) for Gatekeeper.

Layer rule: notify/ imports only core/, stdlib, and third-party libraries.
auth/ receives a notifier instance by injection and never imports it at runtime.
"""
