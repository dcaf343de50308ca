"""Passgate - passkey ceremony server.

Issues WebAuthn registration and assertion challenges, tracks them until
they are consumed, verifies client responses and persists credentials with
sign-counter replay protection.
"""

__version__ = "0.1.0"
