"""
MongoDB repository for transition approval requests.

Decisions are written with a ``status: pending`` filter, so two processes
deciding on the same request cannot both succeed.
"""

from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, IndexModel
from pymongo.errors import PyMongoError

from backend.app.core.database import get_mongodb_database
from backend.app.core.exceptions import (
    ApprovalAlreadyDecidedError,
    ApprovalNotFoundError,
    DatabaseError,
)
from backend.app.models.domain.lifecycle import ApprovalStatus, TransitionApproval
from backend.app.repositories.base import ApprovalRepository
from backend.app.utils.logging import persistence_logger, get_logger, performance_context

logger = get_logger(__name__)


def _to_document(approval: TransitionApproval) -> Dict[str, Any]:
    document = approval.to_dict()
    document["created_at"] = approval.created_at
    document["decided_at"] = approval.decided_at
    return document


def _from_document(document: Dict[str, Any]) -> TransitionApproval:
    document.pop("_id", None)
    return TransitionApproval.from_dict(document)


class MongoApprovalRepository(ApprovalRepository):
    """Stores approval requests in the ``transition_approvals`` collection."""

    def __init__(self, database: Optional[AsyncIOMotorDatabase] = None):
        self._database = database
        self._collection_name = "transition_approvals"
        self._indexes_created = False

    async def _get_collection(self) -> AsyncIOMotorCollection:
        if self._database is None:
            self._database = await get_mongodb_database()
        collection = self._database[self._collection_name]
        if not self._indexes_created:
            try:
                await collection.create_indexes([
                    IndexModel([("approval_id", ASCENDING)], unique=True),
                    IndexModel([("case_id", ASCENDING), ("status", ASCENDING)]),
                    IndexModel([("status", ASCENDING), ("created_at", DESCENDING)]),
                ])
            except PyMongoError as e:
                logger.warning("Failed to create approval indexes", error=str(e))
            self._indexes_created = True
        return collection

    def _database_error(self, operation: str, error: Exception) -> DatabaseError:
        return DatabaseError(
            f"Approval {operation} failed: {error}",
            database_type="mongodb",
            collection_name=self._collection_name,
            operation=operation
        )

    async def create_approval(self, approval: TransitionApproval) -> None:
        collection = await self._get_collection()
        try:
            with performance_context("mongodb_create_approval", case_id=approval.case_id):
                await collection.insert_one(_to_document(approval))
        except PyMongoError as e:
            raise self._database_error("create_approval", e) from e
        persistence_logger.operation_completed(
            backend="mongodb",
            operation="create_approval",
            collection=self._collection_name,
            documents=1
        )

    async def load_approval(self, approval_id: str) -> Optional[TransitionApproval]:
        collection = await self._get_collection()
        try:
            document = await collection.find_one({"approval_id": approval_id})
        except PyMongoError as e:
            raise self._database_error("load_approval", e) from e
        return _from_document(document) if document else None

    async def save_decision(self, approval: TransitionApproval) -> None:
        collection = await self._get_collection()
        decision = {
            "status": approval.status.value,
            "decided_by": approval.decided_by,
            "decided_by_role": approval.decided_by_role.value if approval.decided_by_role else None,
            "decision_reason": approval.decision_reason,
            "decided_at": approval.decided_at,
        }
        try:
            with performance_context("mongodb_save_decision", approval_id=approval.approval_id):
                updated = await collection.find_one_and_update(
                    {"approval_id": approval.approval_id, "status": ApprovalStatus.PENDING.value},
                    {"$set": decision}
                )
                if updated is None:
                    stored = await collection.find_one({"approval_id": approval.approval_id}, {"status": 1})
        except PyMongoError as e:
            raise self._database_error("save_decision", e) from e

        if updated is None:
            if stored is None:
                raise ApprovalNotFoundError(approval.approval_id)
            raise ApprovalAlreadyDecidedError(approval.approval_id, stored["status"])
        persistence_logger.operation_completed(
            backend="mongodb",
            operation="save_decision",
            collection=self._collection_name,
            documents=1
        )

    async def list_approvals(
        self,
        case_id: Optional[str] = None,
        status: Optional[ApprovalStatus] = None
    ) -> List[TransitionApproval]:
        query: Dict[str, Any] = {}
        if case_id is not None:
            query["case_id"] = case_id
        if status is not None:
            query["status"] = status.value

        collection = await self._get_collection()
        try:
            cursor = collection.find(query).sort("created_at", DESCENDING)
            documents = await cursor.to_list(length=None)
        except PyMongoError as e:
            raise self._database_error("list_approvals", e) from e
        return [_from_document(document) for document in documents]
