"""
Base repository implementation with common functionality for all repositories.

Repositories receive a session and never commit it. Transaction boundaries
belong to the caller (DatabaseManager.session_scope).
"""

from contextlib import contextmanager
from typing import Any, Generic, NoReturn, Optional, Type, TypeVar

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..context.tenant_context import TenantContext
from ..exceptions import ErrorCode, PersistenceError, RepositoryError, duplicate
from ..utils.logger import ContextAwareLogger, get_logger

T = TypeVar("T")


class BaseRepository(Generic[T]):
    """Base repository with common functionality for all repositories."""

    def __init__(
        self,
        session: Session,
        entity_class: Type[T],
        logger: Optional[ContextAwareLogger] = None,
    ):
        """
        Initialize the base repository.

        Args:
            session: SQLAlchemy session for database operations
            entity_class: SQLAlchemy model class this repository handles
            logger: Optional logger instance
        """
        self.session = session
        self.entity_class = entity_class
        self.logger = logger or get_logger()
        self.entity_name = entity_class.__name__

    def _handle_db_error(
        self,
        e: Exception,
        operation_name: str,
        entity_id: Optional[str] = None,
        **context: Any,
    ) -> NoReturn:
        """
        Map database errors onto the repository error hierarchy.

        Raises:
            RepositoryError: duplicate (409) or constraint violations
            PersistenceError: Any other database failure
        """
        if isinstance(e, RepositoryError):
            raise e

        error_context = {
            "operation_name": operation_name,
            "entity_type": self.entity_name,
            "tenant_id": context.pop("tenant_id", None) or TenantContext.get_current_tenant_id(),
            **context,
        }
        if entity_id:
            error_context["entity_id"] = entity_id

        if isinstance(e, IntegrityError):
            error_message = str(getattr(e, "orig", e)).lower()

            if "unique constraint" in error_message or "duplicate" in error_message:
                raise duplicate(resource_type=self.entity_name, cause=e, **error_context)

            raise RepositoryError(
                f"Database constraint violation for {self.entity_name}: {str(e)}",
                error_code=ErrorCode.CONSTRAINT_VIOLATION,
                cause=e,
                **error_context,
            )

        if isinstance(e, SQLAlchemyError):
            raise PersistenceError(
                f"Database error for {self.entity_name}: {str(e)}",
                error_code=ErrorCode.DATABASE_ERROR,
                cause=e,
                **error_context,
            )

        raise RepositoryError(
            f"Unexpected error for {self.entity_name}: {str(e)}",
            error_code=ErrorCode.INTERNAL_ERROR,
            cause=e,
            **error_context,
        )

    @contextmanager
    def _session_operation(
        self, operation_name: str, entity_id: Optional[str] = None, is_read_only: bool = False
    ):
        """
        Run a block against the repository session with error mapping.

        Write operations are flushed so constraint violations surface here
        rather than at commit.
        """
        try:
            yield self.session
            if not is_read_only:
                self.session.flush()
        except Exception as e:
            self._handle_db_error(e, operation_name, entity_id)

    def _get_by_id(self, entity_id: str) -> Optional[T]:
        with self._session_operation("get_by_id", entity_id, is_read_only=True) as session:
            return session.get(self.entity_class, entity_id)
