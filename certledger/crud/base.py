"""
Base CRUD operations with SQLAlchemy 2.x patterns.
Only insert() with RETURNING is used here; reads live in the subclasses.
Errors propagate to the calling ledger operation, which owns the transaction.
"""
from sqlalchemy import insert
from sqlalchemy.orm import Session
import logging
from typing import TypeVar, Generic, Type, Dict, Any
from certledger.models import Base

logger = logging.getLogger(__name__)
ModelType = TypeVar("ModelType", bound=Base)

class CRUDBase(Generic[ModelType]):
    def __init__(self, model: Type[ModelType]):
        self.model = model

    def create(self, db: Session, *, obj_in: Dict[str, Any]) -> ModelType:
        """
        Insert one record inside the caller's transaction.
        The caller commits or rolls back; nothing is committed here.
        """
        stmt = insert(self.model).values(**obj_in).returning(self.model)
        return db.execute(stmt).scalar_one()
