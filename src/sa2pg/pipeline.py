"""
Migration pipeline - main orchestration

discover -> plan -> (per phase) create, move, constrain, validate -> procedures
"""

from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import structlog

from .adapters import DatabaseAdapter, create_adapter
from .config import Settings
from .discovery import SchemaDiscoverer, detect_drift, has_drift
from .errors import MovementError, QueryExecutionError, SchemaConflictError, ValidationMismatchError
from .ledger import MigrationLedger
from .models import (
    CancelToken,
    ForeignKeyEdge,
    MappedTable,
    MigrationPhase,
    MigrationPlan,
    MigrationReport,
    ProcedureDescriptor,
    SchemaSnapshot,
    TranslatedProcedure,
    ValidationRecord,
)
from .mover import DataMover
from .planner import DependencyPlanner
from .translator import ProcedureTranslator, render_script
from .type_mapper import TypeMapper, map_edge
from .validator import Validator, ensure_passed

logger = structlog.get_logger()

# (child, parent, child columns, name) in source identifiers
EdgeKey = Tuple[str, str, Tuple[str, ...], str]


def _edge_key(edge: ForeignKeyEdge) -> Tuple[str, str, Tuple[str, ...]]:
    return edge.child_table.lower(), edge.parent_table.lower(), tuple(col.lower() for col in edge.child_columns)


class MigrationPipeline:
    """Runs a complete migration from the source engine to the target engine"""

    def __init__(
        self,
        settings: Settings,
        source: Optional[DatabaseAdapter] = None,
        target: Optional[DatabaseAdapter] = None,
        ledger: Optional[MigrationLedger] = None,
        cancel_token: Optional[CancelToken] = None,
    ):
        self.settings = settings
        options = settings.migration

        self.source = source or create_adapter(settings.source)
        self.target = target or create_adapter(settings.target)
        self.ledger = ledger or MigrationLedger(options.ledger_dir)
        self.cancel_token = cancel_token or CancelToken()
        self.artifact_dir = Path(options.artifact_dir)

        self.mapper = TypeMapper(options.type_overrides, normalize_identifier=self.target.normalize_identifier)
        self.planner = DependencyPlanner(defer_cycles=options.defer_cycles)
        self.translator = ProcedureTranslator(self.mapper, schema=self.target.schema or "public")
        self.mover = DataMover(
            self.source,
            self.target,
            batch_size=options.batch_size,
            max_retries=options.max_retries,
            retry_wait_min=options.retry_wait_min,
            retry_wait_max=options.retry_wait_max,
            cancel_token=self.cancel_token,
        )
        self.validator = Validator(
            self.source,
            self.target,
            sample_size=options.sample_size,
            procedure_arguments=options.procedure_arguments,
        )

    # ------------------------------------------------------------------
    # stages usable on their own (discover / plan commands)
    # ------------------------------------------------------------------

    def discover(self, with_procedures: Optional[bool] = None) -> SchemaSnapshot:
        if with_procedures is None:
            with_procedures = self.settings.migration.migrate_procedures
        discoverer = SchemaDiscoverer(
            self.source,
            include=self.settings.migration.include_tables,
            exclude=self.settings.migration.exclude_tables,
            cancel_token=self.cancel_token,
        )
        return discoverer.discover(with_procedures=with_procedures)

    def plan(self, snapshot: Optional[SchemaSnapshot] = None) -> Tuple[SchemaSnapshot, MigrationPlan]:
        snapshot = snapshot or self.discover()
        plan = self.planner.plan(snapshot.tables, snapshot.foreign_keys)
        self.ledger.record_plan(plan)
        return snapshot, plan

    def map_schema(self, snapshot: SchemaSnapshot) -> Tuple[Dict[str, MappedTable], Dict[EdgeKey, ForeignKeyEdge]]:
        """Mapped tables by source name, and every edge translated to target identifiers"""
        tables = {table.name: self.mapper.map_table(table) for table in snapshot.tables}
        edges = {_source_key(edge): map_edge(edge, tables) for edge in snapshot.foreign_keys}
        return tables, edges

    # ------------------------------------------------------------------
    # full run
    # ------------------------------------------------------------------

    def run(self) -> MigrationReport:
        """Migrate schema, rows and procedures; raises on the first halting error"""
        report = MigrationReport()
        opened = [adapter for adapter in (self.source, self.target) if not adapter.is_connected]

        logger.info(
            "Starting migration",
            source=self.source.engine,
            target=self.target.engine,
            batch_size=self.settings.migration.batch_size,
            workers=self.settings.migration.workers,
        )
        try:
            for adapter in opened:
                adapter.connect()

            snapshot, plan = self.plan()
            report.plan = plan

            # Everything that can fail without touching data fails here
            tables, edges = self.map_schema(snapshot)
            translated = self._translate(snapshot.procedures)
            existing = self._check_existing(tables)

            self.target.ensure_checkpoint_table()
            self._check_checkpoints(tables, existing)
            self._write_artifact("schema.sql", self._render_schema(plan, tables, edges))

            for phase in plan.phases:
                self.cancel_token.raise_if_cancelled(f"phase {phase.index}")
                self._run_phase(phase, plan, tables, edges, existing, report)

            if translated:
                report.procedures = translated
                self._run_procedures(snapshot.procedures, translated, report)

            report.finished_at = datetime.now().isoformat()
            logger.info(
                "Migration completed",
                phases=len(plan.phases),
                tables=len(tables),
                rows=sum(result.rows_committed for result in report.move_results.values()),
                procedures=len(translated),
            )
            return report
        finally:
            for adapter in opened:
                adapter.disconnect()

    def _translate(self, procedures: Sequence[ProcedureDescriptor]) -> List[TranslatedProcedure]:
        if not (self.settings.migration.migrate_procedures and procedures):
            return []
        return self.translator.translate_all(procedures)

    def _check_existing(self, tables: Dict[str, MappedTable]) -> Dict[str, bool]:
        """Which target tables already exist; a diverging one stops the run"""
        present = {name.lower() for name in self.target.list_tables()}
        existing = {}
        for name, table in tables.items():
            existing[name] = table.target_name.lower() in present
            if not existing[name]:
                continue
            drift = detect_drift(table, self.target.describe_table(table.target_name))
            if has_drift(drift):
                raise SchemaConflictError(table.target_name, drift)
            logger.info("Reusing existing target table", table=table.target_name)
        return existing

    def _check_checkpoints(self, tables: Dict[str, MappedTable], existing: Dict[str, bool]):
        for name, table in tables.items():
            if not existing[name]:
                continue
            committed = (self.target.read_checkpoint(table.target_name) or (0, 0))[0]
            target_rows = self.target.row_count(table.target_name)
            if target_rows != committed:
                raise MovementError(
                    name,
                    f"existing target table holds {target_rows} rows but the checkpoint records {committed}",
                    rows_committed=committed,
                )

    def _run_phase(
        self,
        phase: MigrationPhase,
        plan: MigrationPlan,
        tables: Dict[str, MappedTable],
        edges: Dict[EdgeKey, ForeignKeyEdge],
        existing: Dict[str, bool],
        report: MigrationReport,
    ):
        logger.info("Starting phase", phase=phase.index, kind=phase.kind.value, tables=list(phase.tables))

        for name in phase.tables:
            if existing[name]:
                continue
            inline = [edges[_source_key(edge)] for edge in plan.inline_edges_for(name)]
            self.target.create_table(tables[name], inline)
            existing[name] = True

        results = self.mover.move_tables([tables[name] for name in phase.tables], self.settings.migration.workers)
        for result in results.values():
            self.ledger.record_move(result)
        report.move_results.update(results)

        failed = [result for result in results.values() if not result.success]
        if failed:
            details = "; ".join(f"{result.table_name}: {result.error_message}" for result in failed)
            raise MovementError(
                failed[0].table_name,
                f"phase {phase.index} halted, {len(failed)} table(s) failed ({details})",
                rows_committed=failed[0].rows_committed,
            )

        if phase.deferred_edges:
            self._attach_deferred(phase, edges)

        target_edges: Dict[str, List[ForeignKeyEdge]] = {}
        for key, edge in edges.items():
            target_edges.setdefault(key[0], []).append(edge)

        records = self.validator.validate_phase(phase, tables, target_edges)
        self._record_validations(records, report)
        ensure_passed(records, phase.index)
        logger.info("Phase completed", phase=phase.index, kind=phase.kind.value)

    def _attach_deferred(self, phase: MigrationPhase, edges: Dict[EdgeKey, ForeignKeyEdge]):
        attached = {_edge_key(edge) for edge in self.target.list_foreign_keys()}
        for edge in phase.deferred_edges:
            target_edge = edges[_source_key(edge)]
            if _edge_key(target_edge) in attached:
                logger.info("Constraint already attached", child=target_edge.child_table,
                            parent=target_edge.parent_table)
                continue
            self.target.add_foreign_key(target_edge)

    def _run_procedures(
        self,
        procedures: Sequence[ProcedureDescriptor],
        translated: Sequence[TranslatedProcedure],
        report: MigrationReport,
    ):
        self._write_artifact("procedures.sql", render_script(translated))
        for item in translated:
            self.ledger.record_procedure(item)

        if not self.target.supports_procedures:
            logger.warning("Target cannot host procedures; translations written for review only",
                           target=self.target.engine, procedures=len(translated))
            record = ValidationRecord(subject="*", kind="procedure", phase_index=None, passed=True)
            record.notes.append(f"{self.target.engine} target cannot host procedures; nothing deployed")
            self._record_validations([record], report)
            return

        records = []
        for procedure, item in zip(procedures, translated):
            self.cancel_token.raise_if_cancelled(f"procedure {procedure.name}")
            if item.requires_review:
                record = ValidationRecord(subject=procedure.name, kind="procedure", phase_index=None, passed=False)
                record.mismatches.extend(f"manual review: {reason}" for reason in item.manual_review)
                records.append(record)
                continue

            try:
                self.target.deploy_procedure(item)
            except QueryExecutionError as e:
                logger.error("Failed to deploy function", procedure=procedure.name, error=str(e))
                record = ValidationRecord(subject=procedure.name, kind="procedure", phase_index=None, passed=False)
                record.mismatches.append(f"deployment failed: {e}")
                records.append(record)
                continue

            records.append(self.validator.validate_procedure(procedure))

        self._record_validations(records, report)
        failed = [record.subject for record in records if not record.passed]
        if failed:
            raise ValidationMismatchError(None, failed)

    def _record_validations(self, records: Sequence[ValidationRecord], report: MigrationReport):
        for record in records:
            self.ledger.record_validation(record)
        report.validation_records.extend(records)

    # ------------------------------------------------------------------
    # artifacts
    # ------------------------------------------------------------------

    def _render_schema(
        self, plan: MigrationPlan, tables: Dict[str, MappedTable], edges: Dict[EdgeKey, ForeignKeyEdge]
    ) -> str:
        statements = [
            f"-- Generated schema ({self.source.engine} -> {self.target.engine})",
            f"-- Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
            "",
        ]
        for phase in plan.phases:
            statements.append(f"-- Phase {phase.index} ({phase.kind.value})")
            for name in phase.tables:
                inline = [edges[_source_key(edge)] for edge in plan.inline_edges_for(name)]
                statements.append(self.target.render_create_table(tables[name], inline) + ";")
            for edge in phase.deferred_edges:
                statements.append(self.target.render_add_foreign_key(edges[_source_key(edge)]) + ";")
            statements.append("")
        return "\n".join(statements)

    def _write_artifact(self, filename: str, content: str) -> Path:
        self.artifact_dir.mkdir(parents=True, exist_ok=True)
        path = self.artifact_dir / filename
        with open(path, "w") as f:
            f.write(content)
        logger.info("Artifact written", path=str(path))
        return path


def _source_key(edge: ForeignKeyEdge) -> EdgeKey:
    return edge.child_table, edge.parent_table, edge.child_columns, edge.name or ""
