"""
Credential store for integration credentials.

Credentials are scoped to an organization or to a single widget instance,
as the integration definition says. Reads and writes for one scope are
serialized through the shared keyed lock pool so that a token rotated by
one fetch is never overwritten by a concurrent fetch holding the old one.
"""

from contextlib import contextmanager
from typing import Any, Dict, Generator, Optional, Tuple

from ..cache.key_locks import KeyedLockPool
from ..config import get_config
from ..constants import CredentialScope
from ..context.operation_context import operation
from ..db.db_base import utc_now
from ..db.db_config import DatabaseManager
from ..exceptions import (
    CredentialError,
    ErrorCode,
    TenantIsolationViolationError,
    ValidationError,
)
from ..repositories.credential_repository import CredentialRepository
from ..schemas.integration_schema import IntegrationDefinition
from ..utils.encryption_utils import decrypt_credential, encrypt_credential
from ..utils.json_utils import dumps, loads
from ..utils.logger import get_logger

ScopeRef = Tuple[str, str]


def credential_scope_for(
    definition: IntegrationDefinition,
    organization_id: str,
    widget_config_id: Optional[str] = None,
) -> Optional[ScopeRef]:
    """
    Return (scope_type, scope_id) for the credentials a fetch should use.

    None when the definition uses widget-scoped credentials and no widget
    instance is known.
    """
    if definition.credential_scope == CredentialScope.ORGANIZATION:
        return (CredentialScope.ORGANIZATION.value, organization_id)
    if widget_config_id:
        return (CredentialScope.WIDGET.value, widget_config_id)
    return None


class CredentialService:
    """Get and put encrypted credential bundles per (integration, scope)."""

    def __init__(
        self,
        db_manager: DatabaseManager,
        lock_pool: Optional[KeyedLockPool] = None,
        lock_timeout: Optional[float] = None,
    ):
        self.db_manager = db_manager
        self.lock_pool = lock_pool or KeyedLockPool()
        self.lock_timeout = lock_timeout or get_config().cache.lock_timeout_seconds
        self.logger = get_logger()

    @staticmethod
    def lock_key(integration_id: str, scope: ScopeRef) -> Tuple[str, str, str, str]:
        return ("credential", integration_id, scope[0], scope[1])

    @contextmanager
    def scope_lock(self, integration_id: str, scope: ScopeRef) -> Generator[None, None, None]:
        """
        Hold the credential lock of one scope.

        Raises:
            LockTimeoutError: The lock was not acquired within the configured timeout
        """
        with self.lock_pool.hold(self.lock_key(integration_id, scope), timeout=self.lock_timeout):
            yield

    def get_credentials(
        self, integration_id: str, organization_id: str, scope: ScopeRef
    ) -> Optional[Dict[str, Any]]:
        """
        Decrypted credentials for the scope, or None when none are stored or
        the stored ones were marked invalid.

        Raises:
            TenantIsolationViolationError: The record belongs to another organization
            CredentialError: The record could not be decrypted
        """
        scope_type, scope_id = scope
        with self.scope_lock(integration_id, scope), self.db_manager.session_scope() as session:
            row = CredentialRepository(session).get(integration_id, scope_type, scope_id)
            if row is None:
                return None

            if row.organization_id != organization_id:
                raise TenantIsolationViolationError(
                    "Credential belongs to another organization",
                    integration_id=integration_id,
                    scope_type=scope_type,
                    tenant_id=organization_id,
                )

            if not row.is_valid:
                self.logger.warning(
                    "Stored credentials are marked invalid",
                    extra={"integration_id": integration_id, "scope_type": scope_type},
                )
                return None

            plaintext = decrypt_credential(
                session, row.encrypted_credentials, organization_id, scope_type, scope_id
            )

        if not plaintext:
            raise CredentialError(
                "Failed to decrypt credential data",
                integration_id=integration_id,
                scope_type=scope_type,
            )
        return loads(plaintext)

    @operation()
    def store_credentials(
        self,
        integration_id: str,
        organization_id: str,
        scope: ScopeRef,
        credentials: Dict[str, Any],
    ) -> None:
        """
        Encrypt and store credentials, replacing any existing bundle for the scope.

        Raises:
            ValidationError: credentials is not a non-empty map
        """
        if not isinstance(credentials, dict) or not credentials:
            raise ValidationError(
                "Credentials must be a non-empty map",
                field="credentials",
                error_code=ErrorCode.INVALID_FORMAT,
            )

        scope_type, scope_id = scope
        with self.scope_lock(integration_id, scope), self.db_manager.session_scope() as session:
            repository = CredentialRepository(session)
            existing = repository.get(integration_id, scope_type, scope_id)
            if existing is not None and existing.organization_id != organization_id:
                raise TenantIsolationViolationError(
                    "Credential belongs to another organization",
                    integration_id=integration_id,
                    scope_type=scope_type,
                    tenant_id=organization_id,
                )

            encrypted = encrypt_credential(
                session, dumps(credentials), organization_id, scope_type, scope_id
            )
            repository.upsert(
                integration_id,
                organization_id,
                scope_type,
                scope_id,
                encrypted,
                validated_at=utc_now(),
            )

        self.logger.info(
            "Credentials stored",
            extra={"integration_id": integration_id, "scope_type": scope_type, "tenant_id": organization_id},
        )

    def mark_invalid(self, integration_id: str, scope: ScopeRef) -> bool:
        """Flag the scope's credentials as unusable until they are stored again."""
        with self.scope_lock(integration_id, scope), self.db_manager.session_scope() as session:
            updated = CredentialRepository(session).mark_invalid(integration_id, *scope)

        if updated:
            self.logger.warning(
                "Credentials marked invalid",
                extra={"integration_id": integration_id, "scope_type": scope[0]},
            )
        return updated
