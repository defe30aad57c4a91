"""identity/ -- Client for the external identity authority.

Layer rule: identity/ imports only core/, stdlib and third-party libraries.
It does NOT import from api/, web/, or qrauth/.
"""
