"""
MongoDB repository for case lifecycle state and lifecycle events.

Lifecycle snapshots live in one document per case; events are appended to a
separate collection. A state change updates the snapshot with a version
filter and inserts its events inside one multi-document transaction.
"""

from typing import Any, Dict, List, Optional, Sequence

from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorDatabase
from pymongo import ASCENDING, IndexModel
from pymongo.errors import DuplicateKeyError, PyMongoError

from backend.app.core.database import get_mongodb_database
from backend.app.core.exceptions import (
    CaseNotFoundError,
    DatabaseError,
    ErrorCode,
    LifecycleAlreadyInitializedError,
    StateConflictError,
)
from backend.app.models.domain.lifecycle import CaseSnapshot, LifecycleEvent
from backend.app.repositories.base import CaseLifecycleRepository
from backend.app.utils.logging import persistence_logger, get_logger, performance_context
from backend.config.settings import get_settings

logger = get_logger(__name__)

_DATETIME_FIELDS = ("created_at", "updated_at", "phase_entered_at", "closed_at")


class MongoCaseLifecycleRepository(CaseLifecycleRepository):
    """
    MongoDB-backed lifecycle storage.

    Uses the ``case_lifecycles`` and ``lifecycle_events`` collections.
    Transactions require a replica set; with ``use_transactions`` disabled
    the snapshot update and event insert run as two writes.
    """

    def __init__(
        self,
        database: Optional[AsyncIOMotorDatabase] = None,
        use_transactions: Optional[bool] = None
    ):
        self._database = database
        self._use_transactions = (
            get_settings().database.use_transactions if use_transactions is None else use_transactions
        )
        self._cases_collection_name = "case_lifecycles"
        self._events_collection_name = "lifecycle_events"
        self._indexes_created = False

    async def _get_database(self) -> AsyncIOMotorDatabase:
        if self._database is None:
            self._database = await get_mongodb_database()
        if not self._indexes_created:
            await self._ensure_indexes(self._database)
            self._indexes_created = True
        return self._database

    async def _get_collections(self):
        database = await self._get_database()
        return (
            database[self._cases_collection_name],
            database[self._events_collection_name],
        )

    async def _ensure_indexes(self, database: AsyncIOMotorDatabase) -> None:
        try:
            await database[self._cases_collection_name].create_indexes([
                IndexModel([("case_id", ASCENDING)], unique=True),
                IndexModel([("phase", ASCENDING), ("status", ASCENDING)]),
                IndexModel([("case_type", ASCENDING)]),
            ])
            await database[self._events_collection_name].create_indexes([
                IndexModel([("event_id", ASCENDING)], unique=True),
                IndexModel([
                    ("case_id", ASCENDING),
                    ("timestamp", ASCENDING),
                    ("sequence", ASCENDING)
                ]),
            ])
            logger.debug("Lifecycle indexes ensured")
        except PyMongoError as e:
            logger.warning("Failed to create lifecycle indexes", error=str(e))

    async def create_case(self, snapshot: CaseSnapshot, events: Sequence[LifecycleEvent]) -> None:
        cases, event_log = await self._get_collections()

        async def _write(session=None):
            await cases.insert_one(_snapshot_to_document(snapshot), session=session)
            if events:
                await event_log.insert_many(
                    [_event_to_document(event) for event in events],
                    session=session
                )

        try:
            with performance_context("mongodb_create_lifecycle", case_id=snapshot.case_id):
                await self._run(_write)
                persistence_logger.operation_completed(
                    backend="mongodb",
                    operation="create_lifecycle",
                    collection=self._cases_collection_name,
                    documents=1
                )
        except DuplicateKeyError:
            raise LifecycleAlreadyInitializedError(snapshot.case_id)
        except PyMongoError as e:
            raise DatabaseError(
                f"Failed to create lifecycle for case {snapshot.case_id}: {e}",
                error_code=ErrorCode.DATABASE_OPERATION_FAILED,
                database_type="mongodb",
                collection_name=self._cases_collection_name,
                operation="create_case"
            ) from e

    async def load_case(self, case_id: str) -> Optional[CaseSnapshot]:
        cases, _ = await self._get_collections()
        try:
            with performance_context("mongodb_load_lifecycle", case_id=case_id):
                document = await cases.find_one({"case_id": case_id})
                persistence_logger.operation_completed(
                    backend="mongodb",
                    operation="load_case",
                    collection=self._cases_collection_name,
                    documents=1 if document else 0
                )
        except PyMongoError as e:
            raise DatabaseError(
                f"Failed to load lifecycle for case {case_id}: {e}",
                error_code=ErrorCode.DATABASE_OPERATION_FAILED,
                database_type="mongodb",
                collection_name=self._cases_collection_name,
                operation="load_case"
            ) from e
        return _document_to_snapshot(document) if document else None

    async def commit_changes(
        self,
        snapshot: CaseSnapshot,
        expected_version: int,
        events: Sequence[LifecycleEvent]
    ) -> None:
        cases, event_log = await self._get_collections()
        document = _snapshot_to_document(snapshot)
        document.pop("case_id")

        async def _write(session=None):
            result = await cases.update_one(
                {"case_id": snapshot.case_id, "version": expected_version},
                {"$set": document},
                session=session
            )
            if result.matched_count == 0:
                await self._raise_write_conflict(cases, snapshot.case_id, expected_version, session)
            if events:
                await event_log.insert_many(
                    [_event_to_document(event) for event in events],
                    session=session
                )

        try:
            with performance_context(
                "mongodb_commit_lifecycle",
                case_id=snapshot.case_id,
                version=snapshot.version
            ):
                await self._run(_write)
                persistence_logger.operation_completed(
                    backend="mongodb",
                    operation="commit_changes",
                    collection=self._cases_collection_name,
                    documents=len(events)
                )
        except PyMongoError as e:
            raise DatabaseError(
                f"Failed to commit lifecycle change for case {snapshot.case_id}: {e}",
                error_code=ErrorCode.DATABASE_OPERATION_FAILED,
                database_type="mongodb",
                collection_name=self._cases_collection_name,
                operation="commit_changes"
            ) from e

    async def list_events(self, case_id: str) -> List[LifecycleEvent]:
        _, event_log = await self._get_collections()
        try:
            with performance_context("mongodb_list_lifecycle_events", case_id=case_id):
                cursor = event_log.find({"case_id": case_id}).sort([
                    ("timestamp", ASCENDING),
                    ("sequence", ASCENDING)
                ])
                documents = await cursor.to_list(length=None)
                persistence_logger.operation_completed(
                    backend="mongodb",
                    operation="list_events",
                    collection=self._events_collection_name,
                    documents=len(documents)
                )
        except PyMongoError as e:
            raise DatabaseError(
                f"Failed to list lifecycle events for case {case_id}: {e}",
                error_code=ErrorCode.DATABASE_OPERATION_FAILED,
                database_type="mongodb",
                collection_name=self._events_collection_name,
                operation="list_events"
            ) from e
        return [_document_to_event(document) for document in documents]

    async def _run(self, write) -> None:
        if not self._use_transactions:
            await write()
            return
        database = await self._get_database()
        async with await database.client.start_session() as session:
            async with session.start_transaction():
                await write(session)

    @staticmethod
    async def _raise_write_conflict(
        cases: AsyncIOMotorCollection,
        case_id: str,
        expected_version: int,
        session=None
    ) -> None:
        current = await cases.find_one({"case_id": case_id}, {"version": 1}, session=session)
        if current is None:
            raise CaseNotFoundError(case_id)
        raise StateConflictError(
            case_id,
            expected_version=expected_version,
            actual_version=current.get("version")
        )


def _snapshot_to_document(snapshot: CaseSnapshot) -> Dict[str, Any]:
    document = snapshot.to_dict()
    for name in _DATETIME_FIELDS:
        document[name] = getattr(snapshot, name)
    return document


def _document_to_snapshot(document: Dict[str, Any]) -> CaseSnapshot:
    document = dict(document)
    document.pop("_id", None)
    return CaseSnapshot.from_dict(document)


def _event_to_document(event: LifecycleEvent) -> Dict[str, Any]:
    document = event.to_dict()
    document["timestamp"] = event.timestamp
    return document


def _document_to_event(document: Dict[str, Any]) -> LifecycleEvent:
    document = dict(document)
    document.pop("_id", None)
    return LifecycleEvent.from_dict(document)
