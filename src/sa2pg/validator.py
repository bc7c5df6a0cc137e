"""
Post-phase validation: counts, boundary samples, orphans and procedure outputs
"""

from typing import Any, List, Mapping, Optional, Sequence

import pandas as pd
import structlog

from .adapters import DatabaseAdapter
from .errors import CoercionError, QueryExecutionError, UnsupportedOperationError, ValidationMismatchError
from .models import (
    ForeignKeyEdge,
    MappedTable,
    MigrationPhase,
    ProcedureDescriptor,
    ValidationRecord,
)
from .type_mapper import arrow_rows, coerce_rows

logger = structlog.get_logger()


class Validator:
    """Compares what landed on the target with what the source holds"""

    def __init__(
        self,
        source: DatabaseAdapter,
        target: DatabaseAdapter,
        sample_size: int = 25,
        procedure_arguments: Optional[Mapping[str, List[List[Any]]]] = None,
    ):
        self.source = source
        self.target = target
        self.sample_size = sample_size
        self.procedure_arguments = {
            name.lower(): argument_sets for name, argument_sets in (procedure_arguments or {}).items()
        }

    def validate_table(
        self, table: MappedTable, edges: Sequence[ForeignKeyEdge] = (), phase_index: Optional[int] = None
    ) -> ValidationRecord:
        """Exact row count, first/last rows by key, and orphan check on the target"""
        record = ValidationRecord(subject=table.source_name, kind="table", phase_index=phase_index, passed=False)

        record.source_count = self.source.row_count(table.source_name)
        record.target_count = self.target.row_count(table.target_name)
        record.count_match = record.source_count == record.target_count
        if not record.count_match:
            record.mismatches.append(f"row count: source {record.source_count}, target {record.target_count}")

        record.sample_match = True
        for label, descending in (("first", False), ("last", True)):
            difference = self._compare_sample(table, descending)
            if difference:
                record.sample_match = False
                record.mismatches.append(f"{label} {self.sample_size} rows: {difference}")

        for edge in edges:
            orphans = self.target.count_orphans(edge)
            record.orphan_count += orphans
            if orphans:
                record.mismatches.append(
                    f"{orphans} rows of {edge.child_table} have no parent in {edge.parent_table}"
                )

        record.passed = not record.mismatches
        log = logger.info if record.passed else logger.error
        log(
            "Table validated",
            table=table.source_name,
            passed=record.passed,
            source_count=record.source_count,
            target_count=record.target_count,
            orphans=record.orphan_count,
        )
        return record

    def _compare_sample(self, table: MappedTable, descending: bool) -> Optional[str]:
        """None when both sides agree, otherwise a short description of the difference

        Sample rows are chosen by key order on the source and looked up by the
        same keys on the target, so engines that collate keys differently
        still compare the same rows.
        """
        key_columns = table.order_by_target()
        key_positions = [table.target_columns.index(col) for col in key_columns]

        try:
            source_rows = self.source.fetch_rows(
                table.source_name, table.source_columns, table.order_by_source(), 0, self.sample_size,
                descending=descending,
            )
            keys = [
                tuple(row[i] for i in key_positions) for row in arrow_rows(coerce_rows(table, source_rows))
            ]
            target_rows = self.target.fetch_by_keys(table.target_name, table.target_columns, key_columns, keys)
            by_key = {
                tuple(coerced[i] for i in key_positions): raw
                for raw, coerced in zip(target_rows, arrow_rows(coerce_rows(table, target_rows)))
            }

            missing = [key for key in keys if key not in by_key]
            if missing:
                return f"{len(missing)} sampled keys missing on target (first {list(missing[0])})"

            expected = _frame(table, source_rows)
            actual = _frame(table, [by_key[key] for key in keys])
        except CoercionError as e:
            return f"values not comparable ({e})"

        if expected.equals(actual):
            return None
        differing = expected.compare(actual)
        if differing.empty:
            return None
        return f"{len(differing)} rows differ (keys {[list(keys[i]) for i in differing.index[:5]]})"

    def validate_phase(
        self,
        phase: MigrationPhase,
        tables: Mapping[str, MappedTable],
        target_edges: Mapping[str, Sequence[ForeignKeyEdge]],
    ) -> List[ValidationRecord]:
        """Validate every table of a phase; target_edges are keyed by source child table"""
        records = [
            self.validate_table(tables[name], target_edges.get(name, ()), phase.index)
            for name in phase.tables
        ]
        logger.info(
            "Phase validated",
            phase=phase.index,
            kind=phase.kind.value,
            tables=len(records),
            failed=sum(1 for record in records if not record.passed),
        )
        return records

    def validate_procedure(self, procedure: ProcedureDescriptor) -> ValidationRecord:
        """Compare outputs of a read-only procedure for each configured argument list"""
        record = ValidationRecord(subject=procedure.name, kind="procedure", phase_index=None, passed=True)

        if procedure.behavior.is_mutating:
            record.notes.append(
                f"not compared: {procedure.behavior.value} procedures would change data on both engines"
            )
            return record

        argument_sets = self.procedure_arguments.get(procedure.name.lower())
        if not argument_sets:
            record.notes.append("not compared: no arguments configured")
            return record

        for args in argument_sets:
            try:
                expected = self.source.call_procedure(procedure, args)
                actual = self.target.call_procedure(procedure, args)
            except (QueryExecutionError, UnsupportedOperationError) as e:
                record.mismatches.append(f"call with {args} failed: {e}")
                continue

            if [c.lower() for c in expected.columns] != [c.lower() for c in actual.columns]:
                record.mismatches.append(f"columns differ for {args}: {expected.columns} vs {actual.columns}")
            elif expected.rows != actual.rows:
                record.mismatches.append(f"rows differ for {args}: {len(expected.rows)} vs {len(actual.rows)}")

        record.sample_match = not record.mismatches
        record.passed = not record.mismatches
        logger.info("Procedure validated", procedure=procedure.name, calls=len(argument_sets), passed=record.passed)
        return record


def _frame(table: MappedTable, rows: Sequence[Sequence[Any]]) -> pd.DataFrame:
    return coerce_rows(table, rows).to_pandas()


def ensure_passed(records: Sequence[ValidationRecord], phase_index: Optional[int]):
    """Raise when any record failed"""
    failed = [record.subject for record in records if not record.passed]
    if failed:
        raise ValidationMismatchError(phase_index, failed)
