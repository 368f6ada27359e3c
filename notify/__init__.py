"""notify/ -- Hand-off of email and SMS payloads to an external notification provider.

Layer rule: notify/ imports only stdlib, third-party libraries, and core/.
It does NOT import from auth/. auth/ imports from notify/, not the other way around.
"""
