"""Document store on top of one SQL table via async SQLAlchemy.

Documents are JSON rows in ``documents``. Each write stamps a fresh
``version`` token; a transaction remembers the token of everything it read
and its commit only goes through with compare-and-swap statements
(``UPDATE ... WHERE version = :read_version``) and primary-key inserts, so a
concurrent writer makes the statement miss (or violate the key) and the whole
attempt is rolled back and retried by ``run_transaction``.
"""
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic_core import to_jsonable_python
from sqlalchemy import and_, delete, insert, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

from buddymatch.errors import NotFound, TransactionConflict
from buddymatch.models import Document
from buddymatch.store.base import DocKey, DocumentStore, Filter, Snapshot, Transaction

logger = logging.getLogger(__name__)

_UNREAD = object()

# serialization_failure, deadlock_detected
RETRYABLE_SQLSTATES = ("40001", "40P01")


def _is_retryable(error: DBAPIError) -> bool:
    if isinstance(error, (IntegrityError, OperationalError)):
        return True
    sqlstate = getattr(error.orig, "sqlstate", None) or getattr(error.orig, "pgcode", None)
    return sqlstate in RETRYABLE_SQLSTATES


def _new_version() -> str:
    return uuid.uuid4().hex


def _encode(data: Dict[str, Any]) -> Dict[str, Any]:
    return to_jsonable_python(data)


def _expires_at(data: Dict[str, Any]) -> Optional[datetime]:
    value = data.get("expiresAt")
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        return datetime.fromisoformat(value)
    return None


def _pk(collection: str, doc_id: str):
    return and_(Document.collection == collection, Document.doc_id == doc_id)


def _compile_filter(f: Filter):
    if f.field == "expiresAt":
        column = Document.expires_at
    else:
        element = Document.data[f.field]
        sample = f.value[0] if f.op == "in" and f.value else f.value
        if isinstance(sample, bool):
            column = element.as_boolean()
        elif isinstance(sample, (int, float)):
            column = element.as_float()
        elif isinstance(sample, datetime):
            raise ValueError(f"Datetime filters are only supported on expiresAt, not {f.field}")
        else:
            column = element.as_string()
    if f.op == "==":
        return column.is_(None) if f.value is None else column == f.value
    if f.op == "!=":
        return column.is_not(None) if f.value is None else column != f.value
    if f.op == "<":
        return column < f.value
    if f.op == "<=":
        return column <= f.value
    if f.op == ">":
        return column > f.value
    if f.op == ">=":
        return column >= f.value
    if f.op == "in":
        return column.in_(list(f.value))
    raise ValueError(f"Unsupported filter operator: {f.op}")


def _select_rows(collection: str, filters, limit: Optional[int]):
    stmt = (
        select(Document.doc_id, Document.version, Document.data)
        .where(Document.collection == collection, *[_compile_filter(f) for f in filters])
        .order_by(Document.doc_id)
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    return stmt


class SqlDocumentStore(DocumentStore):

    def __init__(self, session_factory, max_attempts: Optional[int] = None):
        super().__init__(max_attempts)
        self._session_factory = session_factory

    def _begin(self) -> Transaction:
        return SqlTransaction(self._session_factory())

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        async with self._session_factory() as session:
            result = await session.execute(select(Document.data).where(_pk(collection, doc_id)))
            return result.scalar_one_or_none()

    async def query(self, collection: str, *filters: Filter, limit: Optional[int] = None) -> List[Snapshot]:
        async with self._session_factory() as session:
            result = await session.execute(_select_rows(collection, filters, limit))
            return [Snapshot(row.doc_id, row.data) for row in result]

    async def delete(self, collection: str, doc_id: str) -> bool:
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(delete(Document).where(_pk(collection, doc_id)))
            return result.rowcount > 0


class SqlTransaction(Transaction):

    def __init__(self, session):
        super().__init__()
        self._session = session
        self._reads: Dict[DocKey, Optional[str]] = {}
        self._snapshots: Dict[DocKey, Optional[Dict[str, Any]]] = {}

    async def _read(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        key = (collection, doc_id)
        try:
            result = await self._session.execute(
                select(Document.version, Document.data).where(_pk(collection, doc_id))
            )
        except OperationalError as e:
            raise TransactionConflict(f"read of {collection}/{doc_id} failed: {e}") from e
        row = result.first()
        self._remember(key, row.version if row else None, row.data if row else None)
        return dict(row.data) if row else None

    async def query(self, collection: str, *filters: Filter, limit: Optional[int] = None) -> List[Snapshot]:
        try:
            result = await self._session.execute(_select_rows(collection, filters, limit))
        except OperationalError as e:
            raise TransactionConflict(f"query on {collection} failed: {e}") from e
        snapshots = []
        for row in result:
            self._remember((collection, row.doc_id), row.version, row.data)
            snapshots.append(Snapshot(row.doc_id, dict(row.data)))
        return snapshots

    def _remember(self, key: DocKey, version: Optional[str], data: Optional[Dict[str, Any]]) -> None:
        if key not in self._reads:
            self._reads[key] = version
            self._snapshots[key] = data

    async def commit(self) -> None:
        session = self._session
        try:
            # Writes take their row locks before read-only documents are re-checked
            for key, (kind, data) in self._writes.items():
                await self._apply(key, kind, data)
            for key, version in self._reads.items():
                if key in self._writes:
                    continue
                result = await session.execute(
                    select(Document.version).where(_pk(*key)).with_for_update()
                )
                if result.scalar_one_or_none() != version:
                    raise TransactionConflict(f"{key[0]}/{key[1]} was modified concurrently")
            await session.commit()
        except DBAPIError as e:
            await session.rollback()
            if _is_retryable(e):
                raise TransactionConflict(f"commit rejected by the database: {e.__class__.__name__}") from e
            logger.error(f"[commit] Non-retryable database error: {e}")
            raise
        except Exception:
            await session.rollback()
            raise

    async def _apply(self, key: DocKey, kind: str, data: Optional[Dict[str, Any]]) -> None:
        session = self._session
        collection, doc_id = key
        read_version = self._reads.get(key, _UNREAD)

        if kind == "delete":
            stmt = delete(Document).where(_pk(collection, doc_id))
            if read_version is not _UNREAD and read_version is not None:
                stmt = stmt.where(Document.version == read_version)
            result = await session.execute(stmt)
            if read_version is None and result.rowcount:
                raise TransactionConflict(f"{collection}/{doc_id} appeared concurrently")
            if read_version not in (_UNREAD, None) and result.rowcount != 1:
                raise TransactionConflict(f"{collection}/{doc_id} was modified concurrently")
            return

        if kind == "update":
            if read_version is _UNREAD:
                result = await session.execute(
                    select(Document.version, Document.data).where(_pk(collection, doc_id))
                )
                row = result.first()
                if row is None:
                    raise NotFound(f"{collection}/{doc_id} does not exist")
                read_version, base = row.version, row.data
            elif read_version is None:
                raise NotFound(f"{collection}/{doc_id} does not exist")
            else:
                base = self._snapshots[key]
            await self._swap(collection, doc_id, read_version, {**base, **_encode(data)})
            return

        encoded = _encode(data)
        if kind == "create" or read_version is None:
            await session.execute(
                insert(Document).values(
                    collection=collection,
                    doc_id=doc_id,
                    data=encoded,
                    version=_new_version(),
                    expires_at=_expires_at(encoded),
                )
            )
        elif read_version is _UNREAD:
            result = await session.execute(
                update(Document)
                .where(_pk(collection, doc_id))
                .values(data=encoded, version=_new_version(), expires_at=_expires_at(encoded))
            )
            if result.rowcount == 0:
                await session.execute(
                    insert(Document).values(
                        collection=collection,
                        doc_id=doc_id,
                        data=encoded,
                        version=_new_version(),
                        expires_at=_expires_at(encoded),
                    )
                )
        else:
            await self._swap(collection, doc_id, read_version, encoded)

    async def _swap(self, collection: str, doc_id: str, read_version: str, encoded: Dict[str, Any]) -> None:
        result = await self._session.execute(
            update(Document)
            .where(_pk(collection, doc_id), Document.version == read_version)
            .values(data=encoded, version=_new_version(), expires_at=_expires_at(encoded))
        )
        if result.rowcount != 1:
            raise TransactionConflict(f"{collection}/{doc_id} was modified concurrently")

    async def close(self) -> None:
        await self._session.close()
