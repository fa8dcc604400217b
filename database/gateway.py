"""
Database Persistence Layer - Persistence Gateway.

============================================================
PURPOSE
============================================================
Narrow CRUD interface the workflow core uses for every read
and write.

RESPONSIBILITIES:
- Keyed reads, with optional row locks
- Conditional upserts keyed on uniqueness constraints
- Soft delete via visibility tier
- One transaction per command (commit or roll back)

CRITICAL REQUIREMENTS:
- A failed command performs zero writes
- Lost updates surface as Conflict, never silently
- No retries inside the gateway

============================================================
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Generator, List, Optional, Tuple, Type, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from core.exceptions import Conflict, NotFound
from .engine import DatabasePersistenceError


logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT")


# ============================================================
# PERSISTENCE GATEWAY
# ============================================================

class PersistenceGateway:
    """
    Gateway over one SQLAlchemy session.

    The workflow core is stateless between calls; all shared
    state lives behind this gateway.
    """

    def __init__(self, session: Session):
        """
        Initialize gateway.

        Args:
            session: SQLAlchemy session
        """
        self._session = session
        self._depth = 0

    @property
    def session(self) -> Session:
        return self._session

    # --------------------------------------------------------
    # TRANSACTIONS
    # --------------------------------------------------------

    @contextmanager
    def atomic(self) -> Generator["PersistenceGateway", None, None]:
        """
        Run a block as one transaction.

        Nested blocks join the outermost transaction. On any
        exception the whole transaction is rolled back.

        Raises:
            Conflict: concurrent write detected on flush/commit
            DatabasePersistenceError: any other database failure
        """
        self._depth += 1
        outermost = self._depth == 1
        try:
            yield self
            if outermost:
                self._session.commit()
                logger.debug("Transaction committed")
        except (IntegrityError, StaleDataError) as e:
            if outermost:
                self._session.rollback()
            logger.warning(f"Concurrent write conflict, rolled back: {e}")
            raise Conflict(
                "Concurrent write conflict; re-read and retry",
                cause=e,
            ) from e
        except SQLAlchemyError as e:
            if outermost:
                self._session.rollback()
            logger.error(f"Database error, rolled back: {e}")
            raise DatabasePersistenceError(f"Persistence failed: {e}") from e
        except Exception:
            if outermost:
                self._session.rollback()
            raise
        finally:
            self._depth -= 1

    def flush(self) -> None:
        """Flush pending writes so constraint violations surface now."""
        try:
            self._session.flush()
        except (IntegrityError, StaleDataError) as e:
            raise Conflict("Concurrent write conflict; re-read and retry", cause=e) from e

    # --------------------------------------------------------
    # READS
    # --------------------------------------------------------

    def get(
        self,
        model: Type[ModelT],
        entity_id: Any,
        for_update: bool = False,
    ) -> Optional[ModelT]:
        """Get one row by primary key, or None."""
        if entity_id is None:
            return None
        if not for_update:
            return self._session.get(model, entity_id)
        stmt = select(model).where(model.id == entity_id).with_for_update()
        return self._session.execute(stmt).scalars().first()

    def require(
        self,
        model: Type[ModelT],
        entity_id: Any,
        for_update: bool = False,
    ) -> ModelT:
        """
        Get one row by primary key.

        Raises:
            NotFound: id is stale or never existed
        """
        instance = self.get(model, entity_id, for_update=for_update)
        if instance is None:
            raise NotFound(
                f"{model.__name__} {entity_id} not found",
                entity_type=model.__tablename__,
                entity_id=entity_id,
            )
        return instance

    def query(
        self,
        model: Type[ModelT],
        *criteria,
        order_by: Optional[Any] = None,
        for_update: bool = False,
    ) -> List[ModelT]:
        """Select rows matching all criteria."""
        stmt = select(model)
        if criteria:
            stmt = stmt.where(*criteria)
        if order_by is not None:
            stmt = stmt.order_by(order_by)
        if for_update:
            stmt = stmt.with_for_update()
        return list(self._session.execute(stmt).scalars().all())

    def first(self, model: Type[ModelT], *criteria, for_update: bool = False) -> Optional[ModelT]:
        rows = self.query(model, *criteria, for_update=for_update)
        return rows[0] if rows else None

    # --------------------------------------------------------
    # WRITES
    # --------------------------------------------------------

    def insert(self, instance: ModelT) -> ModelT:
        """Add a new row and flush it."""
        self._session.add(instance)
        self.flush()
        return instance

    def upsert(
        self,
        model: Type[ModelT],
        key: Dict[str, Any],
        fields: Dict[str, Any],
    ) -> Tuple[ModelT, bool]:
        """
        Update the row matching key in place, or insert it.

        The key lookup takes a row lock, so two writers on the
        same key serialize. A racing insert that trips the
        unique index surfaces as Conflict.

        Args:
            model: ORM class
            key: Column values identifying the row
            fields: Column values to write

        Returns:
            Tuple of (instance, created)
        """
        criteria = [getattr(model, column) == value for column, value in key.items()]
        existing = self.first(model, *criteria, for_update=True)

        if existing is not None:
            for column, value in fields.items():
                setattr(existing, column, value)
            self.flush()
            return existing, False

        instance = model(**key, **fields)
        self.insert(instance)
        return instance, True

    def soft_delete(self, instance: Any, actor_id: str, at: datetime) -> Any:
        """Move an entity to the trashed visibility tier."""
        instance.visibility_tier = "trashed"
        instance.deleted_at = at
        instance.deleted_by = actor_id
        instance.updated_at = at
        self.flush()
        return instance


__all__ = ["PersistenceGateway"]
