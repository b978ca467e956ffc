"""In-process document store with optimistic concurrency control.

Used for tests and local development (``STORE_BACKEND=memory``). Each
committed write stamps the document with a new version number; a
transaction's commit re-checks the version of everything it read and fails
with ``TransactionConflict`` if any of them moved. Reads yield to the event
loop so concurrent transactions interleave the way they would against a
remote store.
"""
import asyncio
import copy
import itertools
from typing import Any, Dict, List, Optional, Tuple

from buddymatch.errors import NotFound, TransactionConflict
from buddymatch.store.base import DocKey, DocumentStore, Filter, Snapshot, Transaction, matches_filters


class MemoryDocumentStore(DocumentStore):

    def __init__(self, max_attempts: Optional[int] = None):
        super().__init__(max_attempts)
        self._docs: Dict[DocKey, Tuple[int, Dict[str, Any]]] = {}
        self._counter = itertools.count(1)

    def _begin(self) -> Transaction:
        return MemoryTransaction(self)

    def _version(self, key: DocKey) -> Optional[int]:
        entry = self._docs.get(key)
        return entry[0] if entry else None

    def _scan(self, collection: str, filters) -> List[Tuple[str, int, Dict[str, Any]]]:
        rows = []
        for (coll, doc_id), (version, data) in self._docs.items():
            if coll == collection and matches_filters(data, filters):
                rows.append((doc_id, version, data))
        rows.sort(key=lambda row: row[0])
        return rows

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        await asyncio.sleep(0)
        entry = self._docs.get((collection, doc_id))
        return copy.deepcopy(entry[1]) if entry else None

    async def query(self, collection: str, *filters: Filter, limit: Optional[int] = None) -> List[Snapshot]:
        await asyncio.sleep(0)
        rows = self._scan(collection, filters)
        if limit is not None:
            rows = rows[:limit]
        return [Snapshot(doc_id, copy.deepcopy(data)) for doc_id, _, data in rows]

    async def delete(self, collection: str, doc_id: str) -> bool:
        await asyncio.sleep(0)
        return self._docs.pop((collection, doc_id), None) is not None

    def count(self, collection: str) -> int:
        return sum(1 for coll, _ in self._docs if coll == collection)


class MemoryTransaction(Transaction):

    def __init__(self, store: MemoryDocumentStore):
        super().__init__()
        self._store = store
        self._reads: Dict[DocKey, Optional[int]] = {}

    async def _read(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        key = (collection, doc_id)
        entry = self._store._docs.get(key)
        self._reads.setdefault(key, entry[0] if entry else None)
        data = copy.deepcopy(entry[1]) if entry else None
        await asyncio.sleep(0)
        return data

    async def query(self, collection: str, *filters: Filter, limit: Optional[int] = None) -> List[Snapshot]:
        rows = self._store._scan(collection, filters)
        if limit is not None:
            rows = rows[:limit]
        for doc_id, version, _ in rows:
            self._reads.setdefault((collection, doc_id), version)
        snapshots = [Snapshot(doc_id, copy.deepcopy(data)) for doc_id, _, data in rows]
        await asyncio.sleep(0)
        return snapshots

    async def commit(self) -> None:
        await asyncio.sleep(0)
        # No awaits below: validation and apply happen in one step of the event loop.
        store = self._store
        for key, version in self._reads.items():
            if store._version(key) != version:
                raise TransactionConflict(f"{key[0]}/{key[1]} was modified concurrently")
        for key, (kind, _) in self._writes.items():
            exists = key in store._docs
            if kind == "create" and exists:
                raise TransactionConflict(f"{key[0]}/{key[1]} already exists")
            if kind == "update" and not exists:
                raise NotFound(f"{key[0]}/{key[1]} does not exist")
        for key, (kind, data) in self._writes.items():
            if kind == "delete":
                store._docs.pop(key, None)
            elif kind == "update":
                merged = {**store._docs[key][1], **data}
                store._docs[key] = (next(store._counter), merged)
            else:
                store._docs[key] = (next(store._counter), copy.deepcopy(data))
