"""Passkey (WebAuthn) registration and sign-in server.

The Flask application lives in :mod:`passkey_server.app`.
"""
