from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from ..db.db_integration_models import IntegrationCredential
from .base_repository import BaseRepository


class CredentialRepository(BaseRepository[IntegrationCredential]):
    """Encrypted credential rows. Encryption happens in the service layer."""

    def __init__(self, session: Session):
        super().__init__(session, IntegrationCredential)

    def get(
        self, integration_id: str, scope_type: str, scope_id: str
    ) -> Optional[IntegrationCredential]:
        with self._session_operation("get_credential", is_read_only=True) as session:
            return session.scalars(
                select(IntegrationCredential).where(
                    IntegrationCredential.integration_id == integration_id,
                    IntegrationCredential.scope_type == scope_type,
                    IntegrationCredential.scope_id == scope_id,
                )
            ).first()

    def upsert(
        self,
        integration_id: str,
        organization_id: str,
        scope_type: str,
        scope_id: str,
        encrypted_credentials: bytes,
        validated_at: Optional[datetime] = None,
    ) -> IntegrationCredential:
        row = self.get(integration_id, scope_type, scope_id)
        with self._session_operation("upsert_credential", row.id if row else None) as session:
            if row is None:
                row = IntegrationCredential(
                    integration_id=integration_id,
                    organization_id=organization_id,
                    scope_type=scope_type,
                    scope_id=scope_id,
                    encrypted_credentials=encrypted_credentials,
                )
                session.add(row)
            else:
                row.encrypted_credentials = encrypted_credentials
            row.is_valid = True
            row.validated_at = validated_at
        return row

    def mark_invalid(self, integration_id: str, scope_type: str, scope_id: str) -> bool:
        with self._session_operation("mark_credential_invalid") as session:
            result = session.execute(
                update(IntegrationCredential)
                .where(
                    IntegrationCredential.integration_id == integration_id,
                    IntegrationCredential.scope_type == scope_type,
                    IntegrationCredential.scope_id == scope_id,
                )
                .values(is_valid=False)
            )
        return result.rowcount > 0
