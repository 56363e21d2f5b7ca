from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from sqlalchemy import ColumnElement, and_, func, or_, select, update
from sqlalchemy.orm import Session

from app.crm.errors import ConflictError, NotFoundError
from app.crm.models import CRMJob, CRMLead, CRMOpportunity, CRMRoutingRule, utcnow
from app.metrics import observe_round_robin_retry


logger = logging.getLogger("app.crm.engine")

RECORD_MODELS: dict[str, Any] = {"leads": CRMLead, "opportunities": CRMOpportunity}
_TERMINAL_COLUMNS: dict[str, tuple[str, str]] = {
    "leads": ("converted_at", "disqualified_at"),
    "opportunities": ("won_at", "lost_at"),
}


class RecordRepository:
    def model_for(self, module: str) -> Any:
        try:
            return RECORD_MODELS[module]
        except KeyError:
            raise NotFoundError(f"unknown module: {module}") from None

    def terminal_columns(self, module: str) -> tuple[str, str]:
        return _TERMINAL_COLUMNS[module]

    def get(self, session: Session, module: str, record_id: uuid.UUID) -> CRMLead | CRMOpportunity:
        model = self.model_for(module)
        record = session.scalar(select(model).where(model.id == record_id))
        if record is None:
            raise NotFoundError(f"{module[:-1]} not found")
        return record

    def active_criteria(self, module: str) -> list[ColumnElement[bool]]:
        model = self.model_for(module)
        won_column, lost_column = self.terminal_columns(module)
        return [
            getattr(model, won_column).is_(None),
            getattr(model, lost_column).is_(None),
        ]

    def page_for_rescore(
        self,
        session: Session,
        module: str,
        *,
        after_id: uuid.UUID | None,
        limit: int,
    ) -> list[CRMLead | CRMOpportunity]:
        model = self.model_for(module)
        stmt = select(model).where(and_(*self.active_criteria(module)))
        if after_id is not None:
            stmt = stmt.where(model.id > after_id)
        return list(session.scalars(stmt.order_by(model.id).limit(limit)).all())

    def count_in_stages(self, session: Session, stage_ids: list[uuid.UUID]) -> int:
        if not stage_ids:
            return 0
        total = 0
        for model in RECORD_MODELS.values():
            total += int(
                session.scalar(
                    select(func.count()).select_from(model).where(model.stage_id.in_(stage_ids))
                )
                or 0
            )
        return total

    def count_with_priority(self, session: Session, priority_id: uuid.UUID) -> int:
        total = 0
        for model in RECORD_MODELS.values():
            total += int(
                session.scalar(select(func.count()).select_from(model).where(model.priority_id == priority_id)) or 0
            )
        return total

    def compare_and_set(
        self,
        session: Session,
        module: str,
        record_id: uuid.UUID,
        expected_version: int,
        values: dict[str, Any],
        *,
        bump_version: bool = True,
        require_active: bool = False,
    ) -> bool:
        """Apply ``values`` only if the row still carries ``expected_version``."""
        model = self.model_for(module)
        criteria = [model.id == record_id, model.row_version == expected_version]
        if require_active:
            criteria.extend(self.active_criteria(module))
        payload = dict(values)
        if bump_version:
            payload["row_version"] = model.row_version + 1
            payload["updated_at"] = utcnow()
        result = session.execute(
            update(model).where(and_(*criteria)).values(**payload).execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


class RoutingRuleRepository:
    def active_rules(self, session: Session, module: str) -> list[CRMRoutingRule]:
        return list(
            session.scalars(
                select(CRMRoutingRule)
                .where(and_(CRMRoutingRule.module == module, CRMRoutingRule.is_active.is_(True)))
                .order_by(CRMRoutingRule.priority, CRMRoutingRule.created_at, CRMRoutingRule.id)
            ).all()
        )

    def claim_round_robin_slot(
        self,
        session: Session,
        rule_id: uuid.UUID,
        pool_size: int,
        *,
        max_retries: int,
    ) -> int:
        """Reserve the next round-robin slot of a rule.

        The counter is advanced with a compare-and-swap on ``round_robin_index`` so
        concurrent creations on other connections never receive the same slot. A lost
        race re-reads the counter; the caller gets ``ConflictError`` only after
        ``max_retries`` lost races in a row.
        """
        if pool_size <= 0:
            raise ConflictError("round-robin rule has no assignees")
        for attempt in range(1, max_retries + 1):
            current = self._read_index(session, rule_id)
            slot = current % pool_size
            result = session.execute(
                update(CRMRoutingRule)
                .where(and_(CRMRoutingRule.id == rule_id, CRMRoutingRule.round_robin_index == current))
                .values(round_robin_index=(slot + 1) % pool_size)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                return slot
            observe_round_robin_retry()
            logger.info("routing.round_robin_retry", extra={"rule_id": str(rule_id), "attempt": attempt})
        logger.warning("routing.round_robin_exhausted", extra={"rule_id": str(rule_id), "attempt": max_retries})
        raise ConflictError("round-robin assignment is contended, retry the request")

    def _read_index(self, session: Session, rule_id: uuid.UUID) -> int:
        current = session.scalar(select(CRMRoutingRule.round_robin_index).where(CRMRoutingRule.id == rule_id))
        if current is None:
            raise NotFoundError("routing rule not found")
        return int(current)



class JobRepository:
    """Run ownership for background jobs.

    A run owns a job while the job is ``Running`` and carries that run's
    ``run_attempt``. Claiming bumps the attempt, so a redelivered or resumed run
    supersedes any earlier one and the earlier run's writes stop matching.
    """

    def claim(
        self,
        session: Session,
        job_id: uuid.UUID,
        claimable_statuses: Iterable[str],
        *,
        stale_before: datetime,
    ) -> int | None:
        current = session.scalar(select(CRMJob.run_attempt).where(CRMJob.id == job_id))
        if current is None:
            raise NotFoundError("job not found")
        now = utcnow()
        abandoned = and_(
            CRMJob.status == "Running",
            or_(CRMJob.heartbeat_at.is_(None), CRMJob.heartbeat_at < stale_before),
        )
        result = session.execute(
            update(CRMJob)
            .where(
                and_(
                    CRMJob.id == job_id,
                    CRMJob.run_attempt == current,
                    or_(CRMJob.status.in_(list(claimable_statuses)), abandoned),
                )
            )
            .values(
                status="Running",
                run_attempt=current + 1,
                heartbeat_at=now,
                started_at=func.coalesce(CRMJob.started_at, now),
                finished_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            session.rollback()
            return None
        session.commit()
        return int(current) + 1

    def save_run_state(self, session: Session, job_id: uuid.UUID, attempt: int, values: dict[str, Any]) -> bool:
        """Write ``values`` only while run ``attempt`` still owns the job; refreshes the heartbeat."""
        result = session.execute(
            update(CRMJob)
            .where(and_(CRMJob.id == job_id, CRMJob.run_attempt == attempt, CRMJob.status == "Running"))
            .values(heartbeat_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
