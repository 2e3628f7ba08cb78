from __future__ import annotations

import logging
import threading
from typing import Dict, Iterable, Optional

from tablecalc.formula.cell_mapper import RowOrderPolicy
from tablecalc.formula.context import ComputedCell
from tablecalc.formula.cross_table import CrossTableComputationContext
from tablecalc.formula.errors import TableCalcError
from tablecalc.storage import Store

logger = logging.getLogger(__name__)


class ContextRegistry:
    """Live computation contexts, one per table, created on first use.

    Each table also has a re-entrant lock; callers hold it around every
    validate-then-mutate and mutate-then-propagate sequence on that table.
    """

    def __init__(
        self,
        store: Store,
        *,
        row_order_policy: RowOrderPolicy = RowOrderPolicy.STRICT,
        full_rescan: bool = False,
        lock_timeout: float = 5.0,
        context_class=CrossTableComputationContext,
    ) -> None:
        self.store = store
        self.row_order_policy = RowOrderPolicy(row_order_policy)
        self.full_rescan = full_rescan
        self.lock_timeout = lock_timeout
        self.context_class = context_class
        self._contexts: Dict[int, CrossTableComputationContext] = {}
        self._locks: Dict[int, threading.RLock] = {}
        self._row_orders: Dict[int, list[int]] = {}
        self._retired: Dict[int, list[CrossTableComputationContext]] = {}
        self._lock = threading.RLock()

    # ── locking ──────────────────────────────────────────────────────

    def lock(self, table_id: int) -> threading.RLock:
        with self._lock:
            if table_id not in self._locks:
                self._locks[table_id] = threading.RLock()
            return self._locks[table_id]

    # ── lifecycle ────────────────────────────────────────────────────

    def get(self, table_id: int) -> CrossTableComputationContext:
        with self._lock:
            ctx = self._contexts.get(table_id)
            if ctx is None:
                ctx = self.context_class.create(
                    table_id,
                    self.store,
                    row_order_policy=self.row_order_policy,
                    full_rescan=self.full_rescan,
                    row_orders=dict(self._row_orders),
                )
                self._contexts[table_id] = ctx
            return ctx

    def peek(self, table_id: int) -> Optional[CrossTableComputationContext]:
        with self._lock:
            return self._contexts.get(table_id)

    def invalidate(self, table_id: int) -> None:
        """Drop the table's context and every context that loaded the table."""
        with self._lock:
            doomed = [table_id] + [ctx.table_id for ctx in self.contexts_loading(table_id)]
            for tid in doomed:
                ctx = self._contexts.pop(tid, None)
                if ctx is not None:
                    ctx.dispose()
                    logger.info("Invalidated computation context for table %d", tid)

    def _drop_loading(self, table_id: int) -> list[int]:
        dropped = []
        for ctx in self.contexts_loading(table_id):
            self._contexts.pop(ctx.table_id, None)
            self._retire(ctx)
            dropped.append(ctx.table_id)
            logger.info("Dropped computation context for table %d", ctx.table_id)
        return dropped

    def _retire(self, ctx: CrossTableComputationContext) -> None:
        """Dispose a dropped context now, or once its table lock is free.

        A thread holding the table lock may still be using the context.
        """
        lock = self.lock(ctx.table_id)
        if lock.acquire(blocking=False):
            try:
                ctx.dispose()
            finally:
                lock.release()
        else:
            self._retired.setdefault(ctx.table_id, []).append(ctx)

    def dispose_retired(self, table_id: int) -> None:
        """Dispose contexts of the table dropped while it was busy (caller holds the table lock)."""
        with self._lock:
            retired = self._retired.pop(table_id, [])
        for ctx in retired:
            ctx.dispose()

    def reload(self, table_id: int) -> list[int]:
        """Rebuild the table's own context in place; contexts that loaded it are dropped.

        Returns the ids of the tables whose contexts were dropped.
        """
        with self._lock:
            dropped = self._drop_loading(table_id)
            ctx = self._contexts.get(table_id)
            if ctx is not None:
                ctx.reload()
            return dropped

    def set_row_order(self, table_id: int, row_ids: Iterable[int]) -> list[int]:
        """Remember the order for every future context and apply it to the table's own."""
        with self._lock:
            order = list(row_ids)
            self.get(table_id).set_row_order(order)
            self._row_orders[table_id] = order
            return self._drop_loading(table_id)

    def rename_table(self, table_id: int, old_name: str, new_name: str) -> list[int]:
        """Update every name index; contexts that had the table loaded are dropped.

        Returns the ids of the tables whose contexts were dropped.
        """
        with self._lock:
            for ctx in self._contexts.values():
                ctx.handle_table_rename(old_name, new_name, table_id)
            return self._drop_loading(table_id)

    def refresh_name_indexes(self) -> None:
        with self._lock:
            for ctx in self._contexts.values():
                ctx.refresh_name_index()

    def dispose(self) -> None:
        """Dispose all contexts."""
        with self._lock:
            for ctx in self._contexts.values():
                ctx.dispose()
            self._contexts.clear()
            for retired in self._retired.values():
                for ctx in retired:
                    ctx.dispose()
            self._retired.clear()
            logger.info("All computation contexts disposed")

    # ── cross-table coherence ────────────────────────────────────────

    def contexts_loading(self, table_id: int) -> list[CrossTableComputationContext]:
        """Contexts of other tables that hold a copy of `table_id`."""
        with self._lock:
            return [
                ctx for ctx in self._contexts.values()
                if ctx.table_id != table_id and table_id in ctx.loaded_tables()
            ]

    def mirror(self, table_id: int, changes: Iterable[tuple[int, int, object]]) -> list[ComputedCell]:
        """Replay (row_id, column_id, content) writes into every context holding `table_id`.

        Returns the dependents those contexts recalculated. A context that is
        busy or cannot take a write is dropped and rebuilt on next use.
        """
        changes = list(changes)
        affected: list[ComputedCell] = []
        if not changes:
            return affected
        for ctx in self.contexts_loading(table_id):
            lock = self.lock(ctx.table_id)
            if not lock.acquire(timeout=self.lock_timeout):
                logger.warning("Context of table %d busy, dropping it instead of mirroring", ctx.table_id)
                with self._lock:
                    self._contexts.pop(ctx.table_id, None)
                    self._retire(ctx)
                continue
            try:
                for row_id, column_id, content in changes:
                    result = ctx.mirror_cell(table_id, row_id, column_id, content)
                    if result is not None:
                        affected.extend(result.affected_cells)
            except TableCalcError as e:
                logger.warning("Mirroring into context of table %d failed (%s), invalidating it",
                               ctx.table_id, e)
                self.invalidate(ctx.table_id)
            finally:
                lock.release()
        return affected

    # ── introspection ────────────────────────────────────────────────

    def list_contexts(self) -> list[dict]:
        with self._lock:
            return [
                {
                    "table_id": table_id,
                    "loaded_tables": ctx.loaded_tables(),
                    "row_order_policy": ctx.row_order_policy.value,
                }
                for table_id, ctx in self._contexts.items()
            ]
