"""auth/ -- Identity layer for AuthGate: accounts, sessions, one-time codes, mail.

Layer rule: auth/ imports stdlib, third-party libraries and core/.
It does NOT import from api/ or web/.
api/ and web/ import from auth/, not the other way around.
"""
