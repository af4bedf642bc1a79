"""
Authentication

Credential resolution for connections.
"""

from tablesync.auth.broker import CredentialBroker, CredentialGate

__all__ = ["CredentialBroker", "CredentialGate"]
