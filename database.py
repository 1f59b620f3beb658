"""
Database Helper Functions

MongoDB access for the admin backend. A single DocumentStore is built at
startup and handed to whatever needs it. Every read and write is awaitable;
the blocking pymongo call runs in a worker thread.

Live views use subscribe(): the callback receives the whole current result
set of the query each time it changes, never a delta.
"""

import asyncio
import inspect
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database
from pymongo.errors import PyMongoError

from config import Settings

logger = logging.getLogger(__name__)

Snapshot = List[dict]

_OPERATORS = {
    "==": None,
    "!=": "$ne",
    "<": "$lt",
    "<=": "$lte",
    ">": "$gt",
    ">=": "$gte",
    "in": "$in",
}


class StoreUnavailable(Exception):
    pass


def _to_dict(data: Union[BaseModel, dict]) -> dict:
    if isinstance(data, BaseModel):
        return data.model_dump()
    return dict(data)


def _object_id(_id: Any) -> Optional[ObjectId]:
    if isinstance(_id, ObjectId):
        return _id
    try:
        return ObjectId(_id)
    except (InvalidId, TypeError):
        return None


def serialize_doc(doc: Optional[dict]) -> Optional[dict]:
    if not doc:
        return None
    d = dict(doc)
    if "_id" in d:
        d["_id"] = str(d["_id"])  # convert ObjectId to string
    return d


class Query:
    """Equality/range filters, sort and limit for one collection read."""

    def __init__(self):
        self.filters: Dict[str, Any] = {}
        self.sort: List[tuple] = []
        self.max_results: Optional[int] = None

    def where(self, field: str, op: str, value: Any) -> "Query":
        if op not in _OPERATORS:
            raise ValueError(f"Unsupported operator: {op}")
        mongo_op = _OPERATORS[op]
        if mongo_op is None:
            self.filters[field] = value
            return self
        condition = self.filters.setdefault(field, {})
        if not isinstance(condition, dict):
            raise ValueError(f"Field {field} already has an equality filter")
        condition[mongo_op] = value
        return self

    def order_by(self, field: str, descending: bool = False) -> "Query":
        self.sort.append((field, DESCENDING if descending else ASCENDING))
        return self

    def limit(self, n: int) -> "Query":
        self.max_results = int(n)
        return self


class _Poller:
    def __init__(self, interval: float):
        self.interval = interval

    async def open(self):
        pass

    async def wait(self):
        await asyncio.sleep(self.interval)

    async def close(self):
        pass


class _ChangeStream:
    """Waits for the next change event on a collection.

    Falls back to polling when the server has no change streams (standalone
    mongod without a replica set).
    """

    def __init__(self, collection, interval: float):
        self.collection = collection
        self.interval = interval
        self._stream = None

    async def open(self):
        try:
            self._stream = await asyncio.to_thread(
                self.collection.watch, max_await_time_ms=int(self.interval * 1000)
            )
        except PyMongoError as e:
            logger.warning("Change stream unavailable on %s, polling instead: %s", self.collection.name, e)
            self._stream = None

    async def wait(self):
        if self._stream is None:
            await asyncio.sleep(self.interval)
            return
        try:
            while await asyncio.to_thread(self._stream.try_next) is None:
                continue
        except PyMongoError:
            # a dropped stream cannot be resumed; later ticks poll
            await self.close()
            raise

    async def close(self):
        if self._stream is not None:
            stream, self._stream = self._stream, None
            try:
                await asyncio.to_thread(stream.close)
            except PyMongoError:
                logger.warning("Closing change stream on %s failed", self.collection.name, exc_info=True)


class Subscription:
    """A live query bound to the scope that owns it.

    Use as an async context manager, or call start() and later cancel().
    Identical consecutive snapshots are delivered once. A failed fetch or
    change wait is logged and retried, so the task only ends on cancel().
    """

    def __init__(self, name: str, fetch, changes, callback: Callable[[Snapshot], Any],
                 retry_interval: float = 2.0):
        self.name = name
        self.snapshot: Optional[Snapshot] = None
        self._fetch = fetch
        self._changes = changes
        self._callback = callback
        self._retry_interval = retry_interval
        self._task: Optional[asyncio.Task] = None

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> "Subscription":
        if self._task is None:
            loop = asyncio.get_running_loop()
            self._task = loop.create_task(self._run(), name=f"subscription:{self.name}")
        return self

    async def cancel(self):
        if self._task is None:
            return
        task, self._task = self._task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception("Subscription %s ended with an error", self.name)

    async def __aenter__(self) -> "Subscription":
        return self.start()

    async def __aexit__(self, exc_type, exc, tb):
        await self.cancel()

    async def _run(self):
        await self._changes.open()
        try:
            while True:
                try:
                    snapshot = await self._fetch()
                except PyMongoError:
                    logger.exception("Snapshot fetch failed for %s", self.name)
                else:
                    if snapshot != self.snapshot:
                        self.snapshot = snapshot
                        await self._deliver(snapshot)
                try:
                    await self._changes.wait()
                except PyMongoError:
                    logger.exception("Waiting for changes failed for %s", self.name)
                    await asyncio.sleep(self._retry_interval)
        finally:
            await self._changes.close()

    async def _deliver(self, snapshot: Snapshot):
        try:
            result = self._callback(snapshot)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Subscriber of %s failed on snapshot", self.name)


class DocumentStore:
    def __init__(self, db: Optional[Database], change_streams: bool = False,
                 poll_interval: float = 2.0, client: Optional[MongoClient] = None):
        self.db = db
        self.change_streams = change_streams
        self.poll_interval = poll_interval
        self._client = client

    @classmethod
    def from_settings(cls, settings: Settings) -> "DocumentStore":
        if not settings.database_configured:
            logger.warning("DATABASE_URL/DATABASE_NAME not set; store is not initialized")
            return cls(None, settings.change_streams, settings.poll_interval)
        client = MongoClient(settings.database_url)
        return cls(client[settings.database_name], settings.change_streams, settings.poll_interval, client=client)

    @property
    def available(self) -> bool:
        return self.db is not None

    def close(self):
        if self._client is not None:
            self._client.close()
            self._client = None

    def _ensure_db(self):
        if self.db is None:
            raise StoreUnavailable("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")

    # Blocking pymongo calls

    def _find(self, collection_name: str, query: Query) -> Snapshot:
        self._ensure_db()
        cursor = self.db[collection_name].find(query.filters)
        if query.sort:
            cursor = cursor.sort(query.sort)
        if query.max_results:
            cursor = cursor.limit(query.max_results)
        return [serialize_doc(doc) for doc in cursor]

    def _find_one(self, collection_name: str, _id: str) -> Optional[dict]:
        self._ensure_db()
        oid = _object_id(_id)
        if oid is None:
            return None
        return serialize_doc(self.db[collection_name].find_one({"_id": oid}))

    def _insert(self, collection_name: str, data: Union[BaseModel, dict]) -> str:
        self._ensure_db()
        payload = _to_dict(data)
        now = datetime.now(timezone.utc)
        payload.setdefault("created_at", now)
        payload["updated_at"] = now
        result = self.db[collection_name].insert_one(payload)
        return str(result.inserted_id)

    def _replace(self, collection_name: str, _id: str, data: Union[BaseModel, dict]) -> None:
        self._ensure_db()
        oid = _object_id(_id)
        if oid is None:
            raise ValueError(f"Invalid document id: {_id}")
        payload = _to_dict(data)
        now = datetime.now(timezone.utc)
        payload.setdefault("created_at", now)
        payload["updated_at"] = now
        self.db[collection_name].replace_one({"_id": oid}, payload, upsert=True)

    def _update(self, collection_name: str, _id: str, update_data: Dict[str, Any]) -> bool:
        self._ensure_db()
        oid = _object_id(_id)
        if oid is None:
            return False
        update = {"$set": _to_dict(update_data)}
        update["$set"]["updated_at"] = datetime.now(timezone.utc)
        result = self.db[collection_name].update_one({"_id": oid}, update)
        return result.matched_count > 0

    def _remove(self, collection_name: str, _id: str) -> bool:
        self._ensure_db()
        oid = _object_id(_id)
        if oid is None:
            return False
        result = self.db[collection_name].delete_one({"_id": oid})
        return result.deleted_count > 0

    # Async API

    async def get_once(self, collection_name: str, query: Optional[Query] = None) -> Snapshot:
        return await asyncio.to_thread(self._find, collection_name, query or Query())

    async def get(self, collection_name: str, _id: str) -> Optional[dict]:
        return await asyncio.to_thread(self._find_one, collection_name, _id)

    async def create(self, collection_name: str, data: Union[BaseModel, dict]) -> str:
        return await asyncio.to_thread(self._insert, collection_name, data)

    async def put(self, collection_name: str, _id: str, data: Union[BaseModel, dict]) -> None:
        await asyncio.to_thread(self._replace, collection_name, _id, data)

    async def write(self, collection_name: str, _id: str, update_data: Dict[str, Any]) -> bool:
        return await asyncio.to_thread(self._update, collection_name, _id, update_data)

    async def delete(self, collection_name: str, _id: str) -> bool:
        return await asyncio.to_thread(self._remove, collection_name, _id)

    async def collection_names(self) -> List[str]:
        self._ensure_db()
        return await asyncio.to_thread(self.db.list_collection_names)

    def subscribe(self, collection_name: str, query: Optional[Query], callback: Callable[[Snapshot], Any]) -> Subscription:
        """Start a live query. The caller owns the returned Subscription and must cancel it."""
        self._ensure_db()
        query = query or Query()
        if self.change_streams:
            changes = _ChangeStream(self.db[collection_name], self.poll_interval)
        else:
            changes = _Poller(self.poll_interval)

        async def fetch():
            return await self.get_once(collection_name, query)

        return Subscription(collection_name, fetch, changes, callback, self.poll_interval).start()
