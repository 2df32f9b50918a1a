import copy
import logging
import secrets
import threading
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Tuple

from fastapi.concurrency import run_in_threadpool
from sqlalchemy import delete, insert, update as sql_update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from models import StoreNode

logger = logging.getLogger("ecowaste.store")

MAX_TRANSACTION_RETRIES = 25
FORBIDDEN_KEY_CHARS = set(".#$[]")

Listener = Callable[[str, Any], Awaitable[None]]

# Returned by a write function to leave the record untouched.
ABORT = object()


class StoreError(Exception):
    """The backing store could not complete a read or write."""


class TransactionConflict(StoreError):
    def __init__(self, path: str, attempts: int):
        super().__init__(f"transaction on {path} gave up after {attempts} conflicting attempts")
        self.path = path
        self.attempts = attempts


@dataclass
class TransactionResult:
    committed: bool
    value: Any


_key_lock = threading.Lock()
_last_stamp = 0


def new_key() -> str:
    """Generate a record id that sorts after every id generated before it."""
    global _last_stamp
    with _key_lock:
        stamp = time.time_ns() // 1000
        if stamp <= _last_stamp:
            stamp = _last_stamp + 1
        _last_stamp = stamp
    return f"{stamp:014x}{secrets.token_hex(3)}"


def server_timestamp() -> int:
    return int(time.time() * 1000)


def split_path(path: str) -> List[str]:
    parts = [p for p in str(path).strip("/").split("/") if p]
    if not parts:
        raise ValueError("store path must not be empty")
    for part in parts:
        if FORBIDDEN_KEY_CHARS & set(part):
            raise ValueError(f"invalid key {part!r} in path {path!r}")
    return parts


def join_path(*parts: Any) -> str:
    return "/".join(str(p).strip("/") for p in parts if str(p).strip("/"))


def _ordered(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _ordered(value[k]) for k in sorted(value)}
    if isinstance(value, list):
        return [_ordered(v) for v in value]
    return value


def _get_in(doc: Any, keys: List[str]) -> Any:
    node = doc
    for key in keys:
        if not isinstance(node, dict) or key not in node:
            return None
        node = node[key]
    return node


def _set_in(doc: Any, keys: List[str], value: Any) -> Any:
    """Return a copy of `doc` with `value` at `keys`; empty branches collapse to None."""
    if not keys:
        if isinstance(value, dict) and not value:
            return None
        return copy.deepcopy(value)
    node = dict(doc) if isinstance(doc, dict) else {}
    head, rest = keys[0], keys[1:]
    child = _set_in(node.get(head), rest, value)
    if child is None:
        node.pop(head, None)
    else:
        node[head] = child
    return node or None


def _paths_overlap(a: List[str], b: List[str]) -> bool:
    n = min(len(a), len(b))
    return a[:n] == b[:n]


class KeyTreeStore:
    """
    Hierarchical key-value store with per-path push subscriptions.

    Subclasses provide persistence. Writes only ever touch one record, so
    callers get no atomicity across records.
    """

    def __init__(self) -> None:
        self._listeners: Dict[str, List[Listener]] = defaultdict(list)

    # -- subscriptions ------------------------------------------------------

    def subscribe(self, path: str, listener: Listener) -> Callable[[], None]:
        key = join_path(*split_path(path))
        self._listeners[key].append(listener)

        def unsubscribe() -> None:
            listeners = self._listeners.get(key)
            if listeners and listener in listeners:
                listeners.remove(listener)
                if not listeners:
                    del self._listeners[key]

        return unsubscribe

    async def _publish(self, written_path: str) -> None:
        written = split_path(written_path)
        for sub_path, listeners in list(self._listeners.items()):
            if not listeners or not _paths_overlap(split_path(sub_path), written):
                continue
            value = await self.get(sub_path)
            for listener in list(listeners):
                try:
                    await listener(sub_path, copy.deepcopy(value))
                except Exception:
                    logger.exception("Listener on %s failed after write to %s", sub_path, written_path)

    # -- data access --------------------------------------------------------

    async def get(self, path: str) -> Any:
        raise NotImplementedError

    async def _write(self, path: str, fn: Callable[[Any], Any]) -> TransactionResult:
        raise NotImplementedError

    async def _clear(self, collection: str) -> None:
        raise NotImplementedError

    async def set(self, path: str, value: Any) -> None:
        parts = split_path(path)
        if len(parts) == 1:
            if value is not None:
                raise StoreError("whole collections can only be removed, not overwritten")
            await self._clear(parts[0])
        else:
            await self._write(path, lambda _current: value)
        await self._publish(path)

    async def update(self, path: str, values: Mapping[str, Any]) -> None:
        """Merge `values` below `path`; keys may be relative paths such as "steps/s1/step_number"."""
        changes = [(split_path(k), v) for k, v in values.items()]

        def merge(current: Any) -> Any:
            doc = current if isinstance(current, dict) else {}
            for keys, value in changes:
                doc = _set_in(doc, keys, value) or {}
            return doc or None

        await self._write(path, merge)
        await self._publish(path)

    async def remove(self, path: str) -> None:
        await self.set(path, None)

    async def push(self, path: str, value: Any) -> str:
        key = new_key()
        await self.set(join_path(path, key), value)
        return key

    async def transaction(self, path: str, fn: Callable[[Any], Any]) -> TransactionResult:
        """
        Optimistically apply `fn` to the value at `path`.

        `fn` receives a private copy of the current value and returns the new
        one, or None to abort. It may be called several times when other
        writers race on the same record.
        """

        def guarded(current: Any) -> Any:
            outcome = fn(current)
            return ABORT if outcome is None else outcome

        result = await self._write(path, guarded)
        if result.committed:
            await self._publish(path)
        return result


class SqlStore(KeyTreeStore):
    """KeyTreeStore persisted in one SQL table through SQLModel."""

    def __init__(self, engine: Engine, max_retries: int = MAX_TRANSACTION_RETRIES):
        super().__init__()
        self.engine = engine
        self.max_retries = max_retries

    async def get(self, path: str) -> Any:
        try:
            return await run_in_threadpool(self._read, path)
        except SQLAlchemyError as exc:
            raise StoreError(f"read of {path} failed: {exc}") from exc

    async def _write(self, path: str, fn: Callable[[Any], Any]) -> TransactionResult:
        try:
            committed, value = await run_in_threadpool(self._compare_and_swap, path, fn)
        except SQLAlchemyError as exc:
            raise StoreError(f"write to {path} failed: {exc}") from exc
        return TransactionResult(committed=committed, value=value)

    async def _clear(self, collection: str) -> None:
        try:
            await run_in_threadpool(self._delete_collection, collection)
        except SQLAlchemyError as exc:
            raise StoreError(f"clearing {collection} failed: {exc}") from exc

    def _read(self, path: str) -> Any:
        parts = split_path(path)
        with Session(self.engine) as session:
            if len(parts) == 1:
                rows = session.exec(
                    select(StoreNode)
                    .where(StoreNode.collection == parts[0])
                    .order_by(StoreNode.path)
                ).all()
                if not rows:
                    return None
                return {row.path.split("/", 1)[1]: _ordered(row.value) for row in rows}
            row = session.get(StoreNode, join_path(*parts[:2]))
            if row is None:
                return None
            return _ordered(_get_in(row.value, parts[2:]))

    def _delete_collection(self, collection: str) -> None:
        with Session(self.engine) as session:
            session.connection().execute(
                delete(StoreNode).where(StoreNode.collection == collection)
            )
            session.commit()

    def _compare_and_swap(self, path: str, fn: Callable[[Any], Any]) -> Tuple[bool, Any]:
        parts = split_path(path)
        if len(parts) < 2:
            raise StoreError(f"{path} is a collection; writes must target a record")
        root, below = join_path(*parts[:2]), parts[2:]

        for attempt in range(1, self.max_retries + 1):
            with Session(self.engine) as session:
                row = session.get(StoreNode, root)
                doc = copy.deepcopy(row.value) if row is not None else None
                version = row.version if row is not None else 0
                current = _ordered(_get_in(doc, below))

                outcome = fn(copy.deepcopy(current))
                if outcome is ABORT:
                    return False, current
                new_doc = _set_in(doc, below, outcome)

                conn = session.connection()
                if row is None:
                    if new_doc is None:
                        return True, None
                    try:
                        conn.execute(
                            insert(StoreNode).values(
                                path=root, collection=parts[0], value=new_doc, version=1
                            )
                        )
                        session.commit()
                        return True, outcome
                    except IntegrityError:
                        session.rollback()
                        logger.debug("Insert race on %s (attempt %d)", root, attempt)
                        continue

                guard = (StoreNode.path == root) & (StoreNode.version == version)
                if new_doc is None:
                    result = conn.execute(delete(StoreNode).where(guard))
                else:
                    result = conn.execute(
                        sql_update(StoreNode).where(guard).values(value=new_doc, version=version + 1)
                    )
                if result.rowcount == 1:
                    session.commit()
                    return True, outcome
                session.rollback()
                logger.debug("Version conflict on %s (attempt %d)", root, attempt)

        raise TransactionConflict(path, self.max_retries)
