"""auth/ -- Credential and session lifecycle for SessionVault.

Layer rule: auth/ imports only stdlib, third-party libraries and core.config.
It does NOT import from api/ or cache/ (the state cache is injected into
UserStore). api/ and main.py import from auth/, not the other way around.
"""
