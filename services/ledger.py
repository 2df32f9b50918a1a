import copy
import logging
from typing import Any, Callable, Dict, Optional

from models import as_count
from schemas import Material
from services.store import KeyTreeStore, StoreError, join_path

logger = logging.getLogger("ecowaste.ledger")


def _changes(before: Any, after: Any) -> Dict[str, Any]:
    """Top-level keys of `after` that differ from `before` (removed keys map to None)."""
    before = before if isinstance(before, dict) else {}
    changed = {k: v for k, v in after.items() if before.get(k) != v}
    for key in before:
        if key not in after:
            changed[key] = None
    return changed


class QuantityLedger:
    """
    Single-path read-modify-write for shared counters.

    Every change is first attempted as a store transaction. When the
    transaction fails, one plain read-then-write is made instead: a
    concurrent writer may lose its update, which is logged and accepted
    rather than blocking the action that triggered the change.
    """

    def __init__(self, store: KeyTreeStore) -> None:
        self.store = store

    async def mutate(
        self,
        path: str,
        fn: Callable[[Any], Any],
        label: str = "mutate",
        strict: bool = False,
    ) -> Any:
        """
        Apply `fn` to the record at `path` and return the written value.

        Returns None when `fn` aborts (returns None) or, unless `strict`,
        when both the transaction and the fallback write fail.
        """
        try:
            result = await self.store.transaction(path, fn)
            return result.value if result.committed else None
        except StoreError as exc:
            logger.warning(
                "%s: transaction on %s failed (%s); falling back to plain read/write", label, path, exc
            )

        try:
            current = await self.store.get(path)
            updated = fn(copy.deepcopy(current))
            if updated is None:
                return None
            if isinstance(updated, dict):
                changed = _changes(current, updated)
                if changed:
                    await self.store.update(path, changed)
            else:
                await self.store.set(path, updated)
            return updated
        except StoreError:
            logger.exception("%s: fallback write to %s failed; change dropped", label, path)
            if strict:
                raise
            return None
    async def adjust(
        self,
        path: str,
        field: str,
        delta: int,
        floor: int = 0,
        cap: Optional[Callable[[Dict[str, Any]], int]] = None,
        require_change: bool = False,
    ) -> Optional[int]:
        """
        Add `delta` to the numeric `field` of the record at `path`.

        The result never drops below `floor` and, with `cap`, never exceeds
        `cap(record)`. A positive delta never lowers the stored value. Returns
        the new value, or None when the record is missing, the write was
        dropped, or `require_change` is set and the value did not move.
        """

        def apply(record: Any) -> Any:
            if not isinstance(record, dict):
                return None
            current = as_count(record.get(field))
            value = current + delta
            if cap is not None:
                value = min(value, cap(record))
            value = max(floor, value)
            if delta > 0:
                value = max(value, current)
            if require_change and value == current:
                return None
            record[field] = value
            return record

        record = await self.mutate(path, apply, label=f"adjust {field}")
        if record is None:
            logger.warning("adjust %s by %+d at %s skipped: record missing, unchanged or write dropped", field, delta, path)
            return None
        logger.info("%s at %s adjusted by %+d to %d", field, path, delta, record[field])
        return record[field]

    async def credit_material(self, project_id: str, material_id: str, quantity: int) -> Optional[int]:
        """Add `quantity` to a project material's `acquired`, never past what it needs."""
        return await self.adjust(
            join_path("projects", project_id, "materials", material_id),
            "acquired",
            quantity,
            cap=lambda record: Material.model_validate(record).needed,
            require_change=True,
        )
