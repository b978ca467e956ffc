"""Transactional document store interface.

Every piece of cross-request coordination goes through this interface: a
document is addressed by ``(collection, doc_id)``, reads inside a transaction
are remembered, and at commit the store refuses to apply the buffered writes
if any document the transaction touched was changed by someone else in the
meantime. ``run_transaction`` then reruns the whole transaction body, which
re-reads fresh state and re-validates its preconditions.
"""
import asyncio
import copy
import logging
import operator
import random
import uuid
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, NamedTuple, Optional, Tuple, TypeVar

from buddymatch.config import TRANSACTION_MAX_ATTEMPTS
from buddymatch.errors import TransactionAborted, TransactionConflict

logger = logging.getLogger(__name__)

T = TypeVar("T")
DocKey = Tuple[str, str]

RETRY_BACKOFF_SECONDS = 0.01

OPS = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "in": lambda value, options: value in options,
}


class Filter(NamedTuple):
    field: str
    op: str
    value: Any


class Snapshot(NamedTuple):
    id: str
    data: Dict[str, Any]


def new_id() -> str:
    return uuid.uuid4().hex


def where(field: str, op: str, value: Any) -> Filter:
    if op not in OPS:
        raise ValueError(f"Unsupported filter operator: {op}")
    return Filter(field, op, value)


def matches_filters(data: Dict[str, Any], filters) -> bool:
    """Evaluate filters against a plain document; missing fields only match ``== None``."""
    for f in filters:
        value = data.get(f.field)
        if value is None:
            if f.op == "==" and f.value is None:
                continue
            if f.op == "!=" and f.value is not None:
                continue
            return False
        if not OPS[f.op](value, f.value):
            return False
    return True


class Transaction(ABC):
    """One attempt of a transaction body.

    Writes are buffered and only become visible at commit. ``get`` overlays the
    buffered writes so a body can read what it already wrote; ``query`` only
    sees committed state.
    """

    def __init__(self):
        self._writes: Dict[DocKey, Tuple[str, Optional[Dict[str, Any]]]] = {}

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        key = (collection, doc_id)
        pending = self._writes.get(key)
        if pending and pending[0] == "delete":
            return None
        if pending and pending[0] in ("create", "set"):
            return copy.deepcopy(pending[1])
        data = await self._read(collection, doc_id)
        if pending and data is not None:
            data = {**data, **copy.deepcopy(pending[1])}
        return data

    @abstractmethod
    async def _read(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        """Read committed state and record it for conflict detection."""

    @abstractmethod
    async def query(self, collection: str, *filters: Filter, limit: Optional[int] = None) -> List[Snapshot]:
        """Query committed state; every returned document is recorded as read."""

    def create(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        """Write a new document; the commit conflicts if it already exists."""
        self._writes[(collection, doc_id)] = ("create", copy.deepcopy(data))

    def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        self._writes[(collection, doc_id)] = ("set", copy.deepcopy(data))

    def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        key = (collection, doc_id)
        pending = self._writes.get(key)
        if pending is None:
            self._writes[key] = ("update", copy.deepcopy(fields))
        elif pending[0] == "delete":
            raise ValueError(f"Cannot update {collection}/{doc_id} after deleting it")
        else:
            self._writes[key] = (pending[0], {**pending[1], **copy.deepcopy(fields)})

    def delete(self, collection: str, doc_id: str) -> None:
        self._writes[(collection, doc_id)] = ("delete", None)

    @abstractmethod
    async def commit(self) -> None:
        """Apply buffered writes atomically or raise ``TransactionConflict``."""

    async def close(self) -> None:
        pass


class DocumentStore(ABC):
    """Storage client injected into every service function."""

    def __init__(self, max_attempts: Optional[int] = None):
        self.max_attempts = max_attempts or TRANSACTION_MAX_ATTEMPTS

    def new_id(self) -> str:
        return new_id()

    @abstractmethod
    def _begin(self) -> Transaction:
        pass

    async def run_transaction(
        self,
        fn: Callable[[Transaction], Awaitable[T]],
        max_attempts: Optional[int] = None,
    ) -> T:
        """Run ``fn`` as a serializable transaction, retrying it on write conflicts.

        Exceptions raised by ``fn`` abort the attempt without writing and
        propagate unchanged. Raises ``TransactionAborted`` once the retry
        budget is exhausted.
        """
        attempts = max_attempts or self.max_attempts
        for attempt in range(1, attempts + 1):
            txn = self._begin()
            try:
                result = await fn(txn)
                await txn.commit()
                return result
            except TransactionConflict as e:
                logger.info(f"[run_transaction] Conflict on attempt {attempt}/{attempts}: {e}")
            finally:
                await txn.close()
            await asyncio.sleep(random.uniform(0, RETRY_BACKOFF_SECONDS * attempt))
        logger.warning(f"[run_transaction] Giving up after {attempts} attempts")
        raise TransactionAborted(f"Could not commit after {attempts} attempts, please retry")

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def query(self, collection: str, *filters: Filter, limit: Optional[int] = None) -> List[Snapshot]:
        pass

    @abstractmethod
    async def delete(self, collection: str, doc_id: str) -> bool:
        """Delete outside a transaction. Returns False if the document was already gone."""
