"""Document store adapters.

Paths alternate collection and document segments: ``gigs`` is a collection,
``gigs/abc/assignments`` is the ``assignments`` subcollection of the
``gigs/abc`` document.  Documents come back as plain dicts carrying their id
under ``"id"``.

Two adapters share one interface:

* :class:`MongoDocumentStore` talks to MongoDB through pymongo and relies on
  server-side multi-document transactions.
* :class:`MemoryDocumentStore` keeps everything in process.  It is used when
  no ``DATABASE_URL`` is configured and by the test-suite, and implements the
  same optimistic transaction contract: reads are validated at commit and the
  transaction body is replayed when another writer got there first.
"""

import copy
import logging
import threading
import uuid
from collections import namedtuple
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.errors import DuplicateKeyError, PyMongoError

from errors import DependencyError, ValidationError

logger = logging.getLogger("oodoo.database")

T = TypeVar("T")

Filter = Tuple[str, Any]
Ordering = Tuple[str, str]


class _ServerTimestamp:
    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


# Field transforms, resolved by the store when the write is applied.
SERVER_TIMESTAMP = _ServerTimestamp()


class ArrayUnion:
    def __init__(self, *values: Any):
        self.values = list(values)


class ArrayRemove:
    def __init__(self, *values: Any):
        self.values = list(values)


class DocumentNotFound(DependencyError):
    default_message = "Document not found"


class DocumentExists(DependencyError):
    default_message = "Document already exists"


class TransactionConflict(DependencyError):
    default_message = "Could not complete the operation due to concurrent updates. Please try again."


class InvalidPath(ValidationError, ValueError):
    """A collection path or document id that cannot address a document."""

    default_message = "Invalid document id"


class _ReadConflict(Exception):
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def split_path(path: str) -> List[str]:
    segments = [segment for segment in path.strip("/").split("/") if segment]
    if not segments or len(segments) % 2 == 0:
        raise InvalidPath()
    return segments


def check_doc_id(doc_id: str) -> str:
    # ids are single path segments; a "/" would address another collection
    if not isinstance(doc_id, str) or not doc_id or "/" in doc_id:
        raise InvalidPath()
    return doc_id


def apply_transforms(existing: Optional[dict], changes: dict, now: datetime) -> dict:
    """Resolve the field transforms in ``changes`` against ``existing``."""
    existing = existing or {}
    resolved = {}
    for key, value in changes.items():
        if value is SERVER_TIMESTAMP:
            resolved[key] = now
        elif isinstance(value, ArrayUnion):
            current = existing.get(key)
            items = list(current) if isinstance(current, list) else []
            for item in value.values:
                if item not in items:
                    items.append(item)
            resolved[key] = items
        elif isinstance(value, ArrayRemove):
            current = existing.get(key)
            items = list(current) if isinstance(current, list) else []
            resolved[key] = [item for item in items if item not in value.values]
        else:
            resolved[key] = copy.deepcopy(value)
    return resolved


def _with_id(doc_id: str, data: dict) -> dict:
    return {"id": doc_id, **data}


class DocumentStore:
    """Interface shared by the store adapters."""

    max_attempts = 5

    def new_id(self) -> str:
        return uuid.uuid4().hex[:20]

    def add(self, path: str, data: dict) -> str:
        doc_id = self.new_id()
        self.set(path, doc_id, data)
        return doc_id

    def get(self, path: str, doc_id: str) -> Optional[dict]:
        raise NotImplementedError

    def set(self, path: str, doc_id: str, data: dict, merge: bool = False) -> None:
        raise NotImplementedError

    def update(self, path: str, doc_id: str, data: dict) -> None:
        raise NotImplementedError

    def delete(self, path: str, doc_id: str) -> None:
        raise NotImplementedError

    def query(
        self,
        path: str,
        where: Optional[Iterable[Filter]] = None,
        order_by: Optional[Iterable[Ordering]] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[dict]:
        raise NotImplementedError

    def run_transaction(self, body: Callable[[Any], T]) -> T:
        raise NotImplementedError

    def ping(self) -> bool:
        raise NotImplementedError


# ----------------------------------------------------------------------
# In-process store
# ----------------------------------------------------------------------

_Write = namedtuple("_Write", "op key data merge")


class MemoryTransaction:
    """Buffers writes and remembers the version of every document read."""

    def __init__(self, store: "MemoryDocumentStore"):
        self._store = store
        self.reads: Dict[Tuple[str, str], Optional[int]] = {}
        self.writes: List[_Write] = []

    def get(self, path: str, doc_id: str) -> Optional[dict]:
        if self.writes:
            raise ValueError("Transaction reads must happen before writes")
        key = self._store._key(path, doc_id)
        version, data = self._store._snapshot(key)
        self.reads.setdefault(key, version)
        return None if data is None else _with_id(doc_id, data)

    def create(self, path: str, doc_id: str, data: dict) -> None:
        self.writes.append(_Write("create", self._store._key(path, doc_id), data, False))

    def add(self, path: str, data: dict) -> str:
        doc_id = self._store.new_id()
        self.create(path, doc_id, data)
        return doc_id

    def set(self, path: str, doc_id: str, data: dict, merge: bool = False) -> None:
        self.writes.append(_Write("set", self._store._key(path, doc_id), data, merge))

    def update(self, path: str, doc_id: str, data: dict) -> None:
        self.writes.append(_Write("update", self._store._key(path, doc_id), data, False))

    def delete(self, path: str, doc_id: str) -> None:
        self.writes.append(_Write("delete", self._store._key(path, doc_id), None, False))


class MemoryDocumentStore(DocumentStore):
    def __init__(self, max_attempts: int = 5):
        self.max_attempts = max_attempts
        self._lock = threading.RLock()
        # (collection path, doc id) -> (version, data)
        self._docs: Dict[Tuple[str, str], Tuple[int, dict]] = {}
        self._version = 0

    @staticmethod
    def _key(path: str, doc_id: str) -> Tuple[str, str]:
        return "/".join(split_path(path)), check_doc_id(doc_id)

    def _snapshot(self, key: Tuple[str, str]) -> Tuple[Optional[int], Optional[dict]]:
        with self._lock:
            entry = self._docs.get(key)
            if entry is None:
                return None, None
            return entry[0], copy.deepcopy(entry[1])

    def _commit(self, writes: List[_Write], reads: Optional[Dict[Tuple[str, str], Optional[int]]] = None) -> None:
        with self._lock:
            for key, version in (reads or {}).items():
                entry = self._docs.get(key)
                if (entry[0] if entry else None) != version:
                    raise _ReadConflict(key)

            now = utcnow()
            staged: Dict[Tuple[str, str], Optional[dict]] = {}

            def current(key):
                if key in staged:
                    return staged[key]
                entry = self._docs.get(key)
                return None if entry is None else entry[1]

            # stage everything first so a failing write leaves no trace
            for write in writes:
                existing = current(write.key)
                if write.op == "create":
                    if existing is not None:
                        raise DocumentExists()
                    staged[write.key] = apply_transforms(None, write.data, now)
                elif write.op == "set":
                    base = dict(existing) if (write.merge and existing is not None) else {}
                    base.update(apply_transforms(existing if write.merge else None, write.data, now))
                    staged[write.key] = base
                elif write.op == "update":
                    if existing is None:
                        raise DocumentNotFound()
                    base = dict(existing)
                    base.update(apply_transforms(existing, write.data, now))
                    staged[write.key] = base
                else:
                    staged[write.key] = None

            for key, data in staged.items():
                if data is None:
                    self._docs.pop(key, None)
                else:
                    self._version += 1
                    self._docs[key] = (self._version, data)

    def get(self, path: str, doc_id: str) -> Optional[dict]:
        _, data = self._snapshot(self._key(path, doc_id))
        return None if data is None else _with_id(doc_id, data)

    def set(self, path: str, doc_id: str, data: dict, merge: bool = False) -> None:
        self._commit([_Write("set", self._key(path, doc_id), data, merge)])

    def update(self, path: str, doc_id: str, data: dict) -> None:
        self._commit([_Write("update", self._key(path, doc_id), data, False)])

    def delete(self, path: str, doc_id: str) -> None:
        self._commit([_Write("delete", self._key(path, doc_id), None, False)])

    def query(self, path, where=None, order_by=None, limit=None, offset=0):
        collection = "/".join(split_path(path))
        with self._lock:
            rows = [
                (key[1], copy.deepcopy(data))
                for key, (_, data) in self._docs.items()
                if key[0] == collection
            ]

        for field, value in where or ():
            rows = [row for row in rows if field in row[1] and row[1][field] == value]

        rows.sort(key=lambda row: row[0])
        # documents without an ordering field are left out of ordered queries
        for field, direction in reversed(list(order_by or ())):
            rows = [row for row in rows if row[1].get(field) is not None]
            try:
                rows.sort(key=lambda row: row[1][field], reverse=(direction == "desc"))
            except TypeError as exc:
                raise ValidationError(f"Cannot sort on field {field!r}") from exc

        rows = rows[offset:]
        if limit is not None:
            rows = rows[:limit]
        return [_with_id(doc_id, data) for doc_id, data in rows]

    def run_transaction(self, body):
        for attempt in range(1, self.max_attempts + 1):
            txn = MemoryTransaction(self)
            result = body(txn)
            try:
                self._commit(txn.writes, txn.reads)
            except _ReadConflict as exc:
                logger.info("Transaction conflict on %s (attempt %d/%d)", "/".join(exc.args[0]), attempt, self.max_attempts)
                continue
            return result
        raise TransactionConflict()

    def ping(self) -> bool:
        return True


# ----------------------------------------------------------------------
# MongoDB store
# ----------------------------------------------------------------------

@contextmanager
def _driver_errors(action: str):
    try:
        yield
    except PyMongoError as exc:
        logger.error("Store %s failed: %s", action, exc, exc_info=True)
        raise DependencyError() from exc


class MongoTransaction:
    def __init__(self, store: "MongoDocumentStore", session):
        self._store = store
        self._session = session

    def get(self, path, doc_id):
        return self._store._get(path, doc_id, session=self._session)

    def create(self, path, doc_id, data):
        self._store._create(path, doc_id, data, session=self._session)

    def add(self, path, data):
        doc_id = self._store.new_id()
        self.create(path, doc_id, data)
        return doc_id

    def set(self, path, doc_id, data, merge=False):
        self._store._set(path, doc_id, data, merge=merge, session=self._session)

    def update(self, path, doc_id, data):
        self._store._update(path, doc_id, data, session=self._session)

    def delete(self, path, doc_id):
        self._store._delete(path, doc_id, session=self._session)


class MongoDocumentStore(DocumentStore):
    """One MongoDB collection per path template.

    ``gigs/abc/assignments/u1`` lives in the ``gigs.assignments`` collection
    with ``_id`` set to the full document path, ``_parent`` to ``gigs/abc``
    and ``_key`` to ``u1``.
    """

    def __init__(self, client: MongoClient, database_name: str, max_attempts: int = 5):
        self._client = client
        self._db = client[database_name]
        self.max_attempts = max_attempts

    @classmethod
    def from_url(cls, url: str, database_name: str, max_attempts: int = 5) -> "MongoDocumentStore":
        return cls(MongoClient(url, tz_aware=True), database_name, max_attempts)

    def _locate(self, path: str):
        segments = split_path(path)
        parent = "/".join(segments[:-1]) or None
        return self._db[".".join(segments[0::2])], parent

    @staticmethod
    def _doc_path(path: str, doc_id: str) -> str:
        return "/".join(split_path(path) + [check_doc_id(doc_id)])

    @staticmethod
    def _from_mongo(raw: Optional[dict]) -> Optional[dict]:
        if raw is None:
            return None
        data = {k: v for k, v in raw.items() if k not in ("_id", "_parent", "_key")}
        return _with_id(raw["_key"], data)

    @staticmethod
    def _update_ops(data: dict, now: datetime) -> dict:
        ops: Dict[str, dict] = {}
        for key, value in data.items():
            if value is SERVER_TIMESTAMP:
                ops.setdefault("$set", {})[key] = now
            elif isinstance(value, ArrayUnion):
                ops.setdefault("$addToSet", {})[key] = {"$each": value.values}
            elif isinstance(value, ArrayRemove):
                ops.setdefault("$pullAll", {})[key] = value.values
            else:
                ops.setdefault("$set", {})[key] = value
        return ops

    def _envelope(self, path, doc_id, data):
        _, parent = self._locate(path)
        return {"_id": self._doc_path(path, doc_id), "_parent": parent, "_key": doc_id, **data}

    def _get(self, path, doc_id, session=None):
        collection, _ = self._locate(path)
        raw = collection.find_one({"_id": self._doc_path(path, doc_id)}, session=session)
        return self._from_mongo(raw)

    def _create(self, path, doc_id, data, session=None):
        collection, _ = self._locate(path)
        document = self._envelope(path, doc_id, apply_transforms(None, data, utcnow()))
        try:
            collection.insert_one(document, session=session)
        except DuplicateKeyError as exc:
            raise DocumentExists() from exc

    def _set(self, path, doc_id, data, merge=False, session=None):
        collection, parent = self._locate(path)
        full_path = self._doc_path(path, doc_id)
        if merge:
            ops = self._update_ops(data, utcnow())
            ops.setdefault("$set", {}).update({"_parent": parent, "_key": doc_id})
            collection.update_one({"_id": full_path}, ops, upsert=True, session=session)
        else:
            document = self._envelope(path, doc_id, apply_transforms(None, data, utcnow()))
            collection.replace_one({"_id": full_path}, document, upsert=True, session=session)

    def _update(self, path, doc_id, data, session=None):
        collection, _ = self._locate(path)
        ops = self._update_ops(data, utcnow())
        if not ops:
            return
        result = collection.update_one({"_id": self._doc_path(path, doc_id)}, ops, session=session)
        if result.matched_count == 0:
            raise DocumentNotFound()

    def _delete(self, path, doc_id, session=None):
        collection, _ = self._locate(path)
        collection.delete_one({"_id": self._doc_path(path, doc_id)}, session=session)

    def get(self, path, doc_id):
        with _driver_errors("get"):
            return self._get(path, doc_id)

    def set(self, path, doc_id, data, merge=False):
        with _driver_errors("set"):
            self._set(path, doc_id, data, merge=merge)

    def update(self, path, doc_id, data):
        with _driver_errors("update"):
            self._update(path, doc_id, data)

    def delete(self, path, doc_id):
        with _driver_errors("delete"):
            self._delete(path, doc_id)

    def query(self, path, where=None, order_by=None, limit=None, offset=0):
        collection, parent = self._locate(path)
        criteria: Dict[str, Any] = {"_parent": parent}
        for field, value in where or ():
            criteria[field] = value
        sort = []
        for field, direction in order_by or ():
            if field not in criteria:
                criteria[field] = {"$ne": None}
            sort.append((field, DESCENDING if direction == "desc" else ASCENDING))
        sort.append(("_key", ASCENDING))
        with _driver_errors("query"):
            cursor = collection.find(criteria, sort=sort, skip=offset, limit=limit or 0)
            return [self._from_mongo(raw) for raw in cursor]

    def run_transaction(self, body):
        for attempt in range(1, self.max_attempts + 1):
            try:
                with self._client.start_session() as session:
                    with session.start_transaction():
                        result = body(MongoTransaction(self, session))
                return result
            except PyMongoError as exc:
                if exc.has_error_label("TransientTransactionError"):
                    logger.info("Transaction conflict (attempt %d/%d): %s", attempt, self.max_attempts, exc)
                    continue
                logger.error("Transaction failed: %s", exc, exc_info=True)
                raise DependencyError() from exc
        raise TransactionConflict()

    def ping(self) -> bool:
        try:
            self._client.admin.command("ping")
        except PyMongoError as exc:
            logger.warning("Store ping failed: %s", exc)
            return False
        return True


def open_store(settings) -> DocumentStore:
    """Build the store once at startup from ``settings``."""
    if settings.database_url:
        logger.info("Using MongoDB database %r", settings.database_name)
        return MongoDocumentStore.from_url(
            settings.database_url, settings.database_name, settings.transaction_attempts
        )
    logger.warning("DATABASE_URL not set; using the in-process document store")
    return MemoryDocumentStore(max_attempts=settings.transaction_attempts)
