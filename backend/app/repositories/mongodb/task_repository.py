"""
MongoDB repository for lifecycle follow-up tasks.
"""

from typing import List, Optional

from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorDatabase
from pymongo import ASCENDING, IndexModel
from pymongo.errors import PyMongoError

from backend.app.core.database import get_mongodb_database
from backend.app.core.exceptions import DatabaseError, TaskCreationError
from backend.app.models.domain.lifecycle import LifecycleTask, TaskRequest
from backend.app.repositories.base import TaskRepository
from backend.app.utils.logging import persistence_logger, get_logger, performance_context

logger = get_logger(__name__)


class MongoTaskRepository(TaskRepository):
    """Stores tasks in the ``lifecycle_tasks`` collection."""

    def __init__(self, database: Optional[AsyncIOMotorDatabase] = None):
        self._database = database
        self._collection_name = "lifecycle_tasks"
        self._indexes_created = False

    async def _get_collection(self) -> AsyncIOMotorCollection:
        if self._database is None:
            self._database = await get_mongodb_database()
        collection = self._database[self._collection_name]
        if not self._indexes_created:
            try:
                await collection.create_indexes([
                    IndexModel([("task_id", ASCENDING)], unique=True),
                    IndexModel([("case_id", ASCENDING), ("status", ASCENDING)]),
                    IndexModel([("due_date", ASCENDING)]),
                ])
            except PyMongoError as e:
                logger.warning("Failed to create task indexes", error=str(e))
            self._indexes_created = True
        return collection

    async def create_task(self, request: TaskRequest) -> LifecycleTask:
        task = LifecycleTask.from_request(request)
        document = task.to_dict()
        document["due_date"] = task.due_date
        document["created_at"] = task.created_at

        try:
            collection = await self._get_collection()
            with performance_context("mongodb_create_task", case_id=request.case_id):
                await collection.insert_one(document)
                persistence_logger.operation_completed(
                    backend="mongodb",
                    operation="create_task",
                    collection=self._collection_name,
                    documents=1
                )
        except (PyMongoError, DatabaseError) as e:
            raise TaskCreationError(
                f"Failed to create task '{request.title}': {e}",
                case_id=request.case_id,
                task_title=request.title
            ) from e
        return task

    async def list_tasks(self, case_id: str) -> List[LifecycleTask]:
        collection = await self._get_collection()
        try:
            cursor = collection.find({"case_id": case_id}).sort("due_date", ASCENDING)
            documents = await cursor.to_list(length=None)
        except PyMongoError as e:
            raise DatabaseError(
                f"Failed to list tasks for case {case_id}: {e}",
                database_type="mongodb",
                collection_name=self._collection_name,
                operation="list_tasks"
            ) from e
        tasks = []
        for document in documents:
            document.pop("_id", None)
            tasks.append(LifecycleTask.from_dict(document))
        return tasks
