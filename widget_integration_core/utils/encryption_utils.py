"""
Encryption helpers for integration credential storage.

Handles cross-database encryption (PostgreSQL pgcrypto, SQLite plaintext for testing).
Keys are isolated per organization and per credential scope.
"""

from typing import Optional

from sqlalchemy import text
from sqlalchemy.orm import Session


def _scope_key(organization_id: str, key_suffix: str) -> str:
    return f"{organization_id}_{key_suffix}" if key_suffix else organization_id


def encrypt_value(
    session: Session, value: str, organization_id: str, key_suffix: str = ""
) -> bytes:
    """
    Encrypt a value using database-specific encryption.

    Args:
        session: Database session
        value: Value to encrypt
        organization_id: Organization ID for key isolation
        key_suffix: Additional key suffix for different data types

    Returns:
        Encrypted bytes
    """
    if session.bind.dialect.name == "postgresql":
        return session.execute(
            text("SELECT pgp_sym_encrypt(:data, :key)"),
            {"data": value, "key": _scope_key(organization_id, key_suffix)},
        ).scalar()

    # SQLite for testing
    return value.encode() if isinstance(value, str) else value


def decrypt_value(
    session: Session, encrypted_value: bytes, organization_id: str, key_suffix: str = ""
) -> Optional[str]:
    """Decrypt a value produced by encrypt_value with the same key material."""
    if not encrypted_value:
        return None

    if session.bind.dialect.name == "postgresql":
        return session.execute(
            text("SELECT pgp_sym_decrypt(:data, :key)"),
            {"data": encrypted_value, "key": _scope_key(organization_id, key_suffix)},
        ).scalar()

    if isinstance(encrypted_value, bytes):
        return encrypted_value.decode()
    return encrypted_value


def encrypt_credential(
    session: Session, credential: str, organization_id: str, scope_type: str, scope_id: str
) -> bytes:
    """Encrypt a credential bundle with organization and scope isolation."""
    return encrypt_value(session, credential, organization_id, f"cred_{scope_type}_{scope_id}")


def decrypt_credential(
    session: Session, encrypted: bytes, organization_id: str, scope_type: str, scope_id: str
) -> Optional[str]:
    """Decrypt a credential bundle."""
    return decrypt_value(session, encrypted, organization_id, f"cred_{scope_type}_{scope_id}")
