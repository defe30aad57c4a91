"""qrauth/ -- Persistent QR login tokens: store, issuer, redeemer, exchange.

Layer rule: qrauth/ imports from core/ and identity/ only.
It does NOT import from api/ or web/; those layers import from qrauth/.
"""
