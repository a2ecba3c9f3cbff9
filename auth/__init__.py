"""auth/ -- Authentication, session lifecycle and permission resolution for tenantguard.

Layer rule: auth/ imports from core/ and cache/ plus third-party libraries.
It does NOT import from api/. api/ imports from auth/, not the other way around.
"""
