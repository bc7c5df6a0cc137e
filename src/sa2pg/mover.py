"""
Batched, resumable data movement from source to target
"""

import time
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional, Sequence

import structlog
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from .adapters import DatabaseAdapter
from .errors import AdapterConnectionError, CoercionError, MigrationCancelled, MovementError, QueryExecutionError
from .models import CancelToken, MappedTable, TableMoveResult
from .type_mapper import arrow_rows, coerce_rows

logger = structlog.get_logger()


def _is_transient(exc: BaseException) -> bool:
    """Lost connections and errors the adapter flagged as transient are worth another attempt"""
    return isinstance(exc, AdapterConnectionError) or getattr(exc, "transient", False)


def _log_retry(retry_state):
    logger.warning(
        "Batch write failed, retrying",
        attempt=retry_state.attempt_number,
        error=str(retry_state.outcome.exception()),
    )


class DataMover:
    """Streams rows in primary-key order, one committed batch at a time"""

    def __init__(
        self,
        source: DatabaseAdapter,
        target: DatabaseAdapter,
        batch_size: int = 5000,
        max_retries: int = 3,
        retry_wait_min: float = 1.0,
        retry_wait_max: float = 10.0,
        cancel_token: Optional[CancelToken] = None,
    ):
        self.source = source
        self.target = target
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.retry_wait_min = retry_wait_min
        self.retry_wait_max = retry_wait_max
        self.cancel_token = cancel_token or CancelToken()

    def move_table(self, table: MappedTable) -> TableMoveResult:
        """Copy one table, resuming after the last committed batch"""
        start_time = time.monotonic()

        checkpoint = self.target.read_checkpoint(table.target_name)
        committed, batches = checkpoint or (0, 0)
        target_rows = self.target.row_count(table.target_name)
        if target_rows != committed:
            raise MovementError(
                table.source_name,
                f"target holds {target_rows} rows but the checkpoint records {committed}",
                rows_committed=committed,
            )

        source_rows = self.source.row_count(table.source_name)
        resumed_from = committed
        if committed:
            logger.info("Resuming table", table=table.source_name, rows_committed=committed, source_rows=source_rows)

        order_by = table.order_by_source()
        while committed < source_rows:
            self.cancel_token.raise_if_cancelled(f"move of {table.source_name}")

            rows = self.source.fetch_rows(table.source_name, table.source_columns, order_by, committed, self.batch_size)
            if not rows:
                break
            try:
                values = arrow_rows(coerce_rows(table, rows))
            except CoercionError as e:
                raise MovementError(table.source_name, f"batch at row {committed}: {e}", rows_committed=committed) from e

            self._write_batch(table, values, committed + len(rows), batches + 1)
            committed += len(rows)
            batches += 1
            logger.debug("Batch committed", table=table.source_name, rows_committed=committed, batch=batches)

        execution_time = time.monotonic() - start_time
        logger.info(
            "Table moved",
            table=table.source_name,
            rows=committed,
            batches=batches,
            resumed_from=resumed_from,
            time_seconds=round(execution_time, 3),
        )
        return TableMoveResult(
            table_name=table.source_name,
            target_table=table.target_name,
            source_rows=source_rows,
            rows_committed=committed,
            batches_committed=batches,
            resumed_from=resumed_from,
            execution_time_seconds=execution_time,
            success=True,
        )

    def _write_batch(self, table: MappedTable, rows: Sequence[tuple], rows_committed: int, batches_committed: int):
        retrying = Retrying(
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(multiplier=1, min=self.retry_wait_min, max=self.retry_wait_max),
            retry=retry_if_exception(_is_transient),
            before_sleep=_log_retry,
            reraise=True,
        )
        try:
            for attempt in retrying:
                with attempt:
                    self.target.write_batch(
                        table.target_name, table.target_columns, rows, rows_committed, batches_committed
                    )
        except (QueryExecutionError, AdapterConnectionError) as e:
            first_row = rows_committed - len(rows)
            attempts = retrying.statistics.get("attempt_number", 1)
            raise MovementError(
                table.source_name,
                f"batch at row {first_row} failed after {attempts} attempt(s): {e}",
                rows_committed=first_row,
            ) from e

    def move_tables(self, tables: Sequence[MappedTable], workers: int = 1) -> Dict[str, TableMoveResult]:
        """Move independent tables concurrently; failures come back as unsuccessful results"""
        results: Dict[str, TableMoveResult] = {}
        cancelled: List[MigrationCancelled] = []

        with ThreadPoolExecutor(max_workers=max(1, min(workers, len(tables) or 1))) as executor:
            futures = {executor.submit(self.move_table, table): table for table in tables}
            for future, table in futures.items():
                try:
                    results[table.source_name] = future.result()
                except MigrationCancelled as e:
                    cancelled.append(e)
                except (MovementError, QueryExecutionError, AdapterConnectionError) as e:
                    logger.error("Failed to move table", table=table.source_name, error=str(e))
                    results[table.source_name] = TableMoveResult(
                        table_name=table.source_name,
                        target_table=table.target_name,
                        source_rows=0,
                        rows_committed=getattr(e, "rows_committed", 0),
                        batches_committed=0,
                        resumed_from=0,
                        execution_time_seconds=0.0,
                        success=False,
                        error_message=str(e),
                    )

        if cancelled:
            raise cancelled[0]

        return results
