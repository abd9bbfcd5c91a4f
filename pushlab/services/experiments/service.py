import random
import uuid
from dataclasses import asdict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from pushlab.core.exceptions import DependencyError, NotFoundError, StateError, ValidationError
from pushlab.models.experiment import (
    METRIC_NAMES,
    Experiment,
    ExperimentStatus,
    ExperimentVariant,
    PrimaryMetric,
)
from pushlab.models.schemas import (
    CreateExperimentRequest,
    ExperimentResponse,
    ExperimentResultsResponse,
    SendExperimentResponse,
    SignificanceResult,
    UpdateExperimentRequest,
    VariantDispatchResult,
    VariantMetrics,
    VariantRate,
    VariantRequest,
    VariantResponse,
)
from pushlab.services.experiments.allocation import WeightedVariant, allocate
from pushlab.services.experiments.stats import (
    VariantCounts,
    determine_winner,
    leader_significance,
)
from pushlab.services.push import PushSender
from pushlab.services.segmentation.service import SegmentationService

logger = structlog.get_logger()

# Fields frozen once an experiment is active or completed
RESTRICTED_FIELDS = ("variants", "segment", "start_date", "primary_metric")

FROZEN_STATUSES = (ExperimentStatus.ACTIVE, ExperimentStatus.COMPLETED)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def variant_counts(experiment: Experiment) -> List[VariantCounts]:
    metric = PrimaryMetric(experiment.primary_metric).value
    return [
        VariantCounts(
            name=v.name, impressions=v.impressions or 0, successes=getattr(v, metric) or 0
        )
        for v in experiment.variants
    ]


class ExperimentService:
    def __init__(
        self,
        db: AsyncSession,
        segmentation: SegmentationService,
        sender: Optional[PushSender] = None,
        rng: Optional[random.Random] = None,
    ):
        self.db = db
        self.segmentation = segmentation
        self.sender = sender
        self.rng = rng

    def _query(self):
        return (
            select(Experiment)
            .options(selectinload(Experiment.variants))
            .execution_options(populate_existing=True)
        )

    async def get_experiment(self, experiment_id: str) -> Experiment:
        result = await self.db.execute(self._query().where(Experiment.id == experiment_id))
        experiment = result.scalar_one_or_none()
        if experiment is None:
            raise NotFoundError(f"Experiment with id '{experiment_id}' not found")
        return experiment

    async def get_experiment_by_name(self, name: str) -> Experiment:
        result = await self.db.execute(self._query().where(Experiment.name == name))
        experiment = result.scalar_one_or_none()
        if experiment is None:
            raise NotFoundError(f"Experiment '{name}' not found")
        return experiment

    async def list_experiments(
        self,
        status: Optional[ExperimentStatus] = None,
        segment: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Experiment]:
        query = (
            self._query()
            .order_by(Experiment.created_at.desc(), Experiment.name)
            .limit(limit)
            .offset(offset)
        )

        if status:
            query = query.where(Experiment.status == status)
        if segment:
            query = query.where(Experiment.segment == segment)

        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def _ensure_name_available(self, name: str, exclude_id: Optional[str] = None) -> None:
        query = select(Experiment.id).where(Experiment.name == name)
        if exclude_id:
            query = query.where(Experiment.id != exclude_id)
        result = await self.db.execute(query)
        if result.first() is not None:
            raise ValidationError(f"Experiment '{name}' already exists", field="name")

    @staticmethod
    def _build_variants(variants: List[VariantRequest]) -> List[ExperimentVariant]:
        return [
            ExperimentVariant(
                id=str(uuid.uuid4()),
                position=position,
                name=v.name,
                title=v.title,
                content=v.content,
                weight=v.weight,
                additional_data=dict(v.additional_data),
                impressions=0,
                opens=0,
                clicks=0,
                conversions=0,
            )
            for position, v in enumerate(variants)
        ]

    async def create_experiment(self, request: CreateExperimentRequest) -> Experiment:
        # The targeted segment must exist
        await self.segmentation.get_segment_by_name(request.segment)
        await self._ensure_name_available(request.name)

        experiment = Experiment(
            id=str(uuid.uuid4()),
            name=request.name,
            description=request.description,
            segment=request.segment,
            status=ExperimentStatus.DRAFT,
            duration_days=request.duration_days,
            primary_metric=request.primary_metric,
            confidence_threshold=request.confidence_threshold,
            metadata_=request.metadata or {},
            variants=self._build_variants(request.variants),
        )

        self.db.add(experiment)
        await self.db.commit()

        logger.info(
            "experiment_created",
            experiment=experiment.name,
            segment=experiment.segment,
            variants=len(request.variants),
        )
        return await self.get_experiment(experiment.id)

    async def update_experiment(
        self, experiment_id: str, request: UpdateExperimentRequest
    ) -> Experiment:
        experiment = await self.get_experiment(experiment_id)
        changes = request.model_dump(exclude_unset=True)

        if experiment.status in FROZEN_STATUSES:
            for field in RESTRICTED_FIELDS:
                if field in changes:
                    raise StateError(
                        f"Field '{field}' cannot be modified while the experiment is "
                        f"{experiment.status.value}",
                        field=field,
                        status=experiment.status.value,
                    )

        if changes.get("name") is not None and changes["name"] != experiment.name:
            await self._ensure_name_available(changes["name"], exclude_id=experiment.id)
            experiment.name = changes["name"]
        if changes.get("segment") is not None:
            await self.segmentation.get_segment_by_name(changes["segment"])
            experiment.segment = changes["segment"]
        if changes.get("description") is not None:
            experiment.description = changes["description"]
        if request.variants is not None:
            # Flush the removals first so reused variant names do not collide
            experiment.variants.clear()
            await self.db.flush()
            experiment.variants.extend(self._build_variants(request.variants))
        if "start_date" in changes:
            experiment.start_date = changes["start_date"]
        if changes.get("duration_days") is not None:
            experiment.duration_days = changes["duration_days"]
        if changes.get("primary_metric") is not None:
            experiment.primary_metric = changes["primary_metric"]
        if changes.get("confidence_threshold") is not None:
            experiment.confidence_threshold = changes["confidence_threshold"]
        if changes.get("metadata") is not None:
            experiment.metadata_ = changes["metadata"]

        await self.db.commit()
        return await self.get_experiment(experiment_id)

    async def delete_experiment(self, experiment_id: str) -> None:
        experiment = await self.get_experiment(experiment_id)

        if experiment.status == ExperimentStatus.ACTIVE:
            raise StateError(
                "An active experiment cannot be deleted; pause or cancel it first",
                status=experiment.status.value,
            )

        await self.db.delete(experiment)
        await self.db.commit()
        logger.info("experiment_deleted", experiment=experiment.name)

    # Lifecycle

    async def _transition(
        self, experiment_id: str, allowed: tuple, action: str
    ) -> Experiment:
        experiment = await self.get_experiment(experiment_id)
        if experiment.status not in allowed:
            raise StateError(
                f"Cannot {action} an experiment in status '{experiment.status.value}'",
                status=experiment.status.value,
            )
        return experiment

    async def start_experiment(self, experiment_id: str) -> Experiment:
        experiment = await self._transition(
            experiment_id, (ExperimentStatus.DRAFT, ExperimentStatus.PAUSED), "start"
        )

        experiment.status = ExperimentStatus.ACTIVE
        experiment.start_date = _now()
        experiment.end_date = experiment.start_date + timedelta(days=experiment.duration_days)

        await self.db.commit()
        logger.info("experiment_started", experiment=experiment.name, end_date=experiment.end_date)
        return await self.get_experiment(experiment_id)

    async def pause_experiment(self, experiment_id: str) -> Experiment:
        experiment = await self._transition(experiment_id, (ExperimentStatus.ACTIVE,), "pause")

        experiment.status = ExperimentStatus.PAUSED

        await self.db.commit()
        logger.info("experiment_paused", experiment=experiment.name)
        return await self.get_experiment(experiment_id)

    async def complete_experiment(self, experiment_id: str) -> Experiment:
        experiment = await self._transition(
            experiment_id, (ExperimentStatus.ACTIVE, ExperimentStatus.PAUSED), "complete"
        )

        experiment.winner = determine_winner(variant_counts(experiment))
        experiment.status = ExperimentStatus.COMPLETED
        experiment.end_date = _now()

        await self.db.commit()
        logger.info("experiment_completed", experiment=experiment.name, winner=experiment.winner)
        return await self.get_experiment(experiment_id)

    async def cancel_experiment(self, experiment_id: str) -> Experiment:
        experiment = await self._transition(experiment_id, (ExperimentStatus.ACTIVE,), "cancel")

        experiment.status = ExperimentStatus.CANCELLED

        await self.db.commit()
        logger.info("experiment_cancelled", experiment=experiment.name)
        return await self.get_experiment(experiment_id)

    # Metrics

    async def record_metric(
        self, experiment_name: str, variant_name: str, metric: str, value: int = 1
    ) -> int:
        """
        Atomically add ``value`` to one variant counter.

        The increment is a single ``UPDATE ... SET counter = counter + :value``
        so concurrent calls never lose an update. Returns the new count.
        """
        if metric not in METRIC_NAMES:
            raise ValidationError(
                f"Unknown metric '{metric}'; expected one of {', '.join(METRIC_NAMES)}",
                field="metric",
            )
        if value < 1:
            raise ValidationError("Metric increments must be positive", field="value")

        column = getattr(ExperimentVariant, metric)
        experiment_id = (
            select(Experiment.id).where(Experiment.name == experiment_name).scalar_subquery()
        )
        stmt = (
            update(ExperimentVariant)
            .where(
                ExperimentVariant.experiment_id == experiment_id,
                ExperimentVariant.name == variant_name,
            )
            .values({column: column + value})
            .execution_options(synchronize_session=False)
        )

        result = await self.db.execute(stmt)
        if result.rowcount == 0:
            await self.db.rollback()
            # Distinguish the missing experiment from the missing variant
            await self.get_experiment_by_name(experiment_name)
            raise NotFoundError(
                f"Variant '{variant_name}' not found in experiment '{experiment_name}'"
            )
        await self.db.commit()

        current = await self.db.execute(
            select(column)
            .join(Experiment, Experiment.id == ExperimentVariant.experiment_id)
            .where(Experiment.name == experiment_name, ExperimentVariant.name == variant_name)
        )
        return current.scalar_one()

    async def send_experiment(
        self, experiment_name: str, additional_data: Optional[Dict[str, Any]] = None
    ) -> SendExperimentResponse:
        if self.sender is None:
            raise DependencyError("No push sender configured")

        experiment = await self.get_experiment_by_name(experiment_name)
        if experiment.status != ExperimentStatus.ACTIVE:
            raise StateError(
                f"Experiment '{experiment_name}' is not active",
                status=experiment.status.value,
            )

        handles = await self.segmentation.collect_device_handles(experiment.segment)
        if not handles:
            logger.info("experiment_send_empty", experiment=experiment_name, segment=experiment.segment)
            return SendExperimentResponse(
                experiment=experiment_name,
                success=True,
                message=f"Segment '{experiment.segment}' has no recipients",
                total_recipients=0,
                variants=[],
            )

        variants = list(experiment.variants)
        allocation = allocate(
            handles, [WeightedVariant(v.name, v.weight) for v in variants], rng=self.rng
        )

        results: List[VariantDispatchResult] = []
        delivered = 0
        for variant in variants:
            recipients = allocation.get(variant.name) or []
            if not recipients:
                continue

            data = {
                **(additional_data or {}),
                **(variant.additional_data or {}),
                "experimentName": experiment_name,
                "variantName": variant.name,
            }

            try:
                delivery = await self.sender.send(recipients, variant.title, variant.content, data)
            except Exception as e:
                # One variant's failure must not stop the remaining variants.
                message = e.message if isinstance(e, DependencyError) else str(e)
                status_code = e.context.get("status_code") if isinstance(e, DependencyError) else None
                logger.error(
                    "variant_dispatch_failed",
                    experiment=experiment_name,
                    variant=variant.name,
                    recipients=len(recipients),
                    error=message,
                    error_type=type(e).__name__,
                )
                results.append(
                    VariantDispatchResult(
                        variant=variant.name,
                        recipients=len(recipients),
                        status_code=status_code,
                        error=message or type(e).__name__,
                    )
                )
                continue

            await self.record_metric(experiment_name, variant.name, "impressions", len(recipients))
            delivered += len(recipients)
            results.append(
                VariantDispatchResult(
                    variant=variant.name,
                    recipients=len(recipients),
                    notification_id=delivery.id,
                    status_code=delivery.status_code,
                )
            )

        failed = [r for r in results if r.error]
        logger.info(
            "experiment_sent",
            experiment=experiment_name,
            recipients=delivered,
            failed_variants=len(failed),
        )
        return SendExperimentResponse(
            experiment=experiment_name,
            success=not failed,
            message=f"Experiment notification sent to {delivered} of {len(handles)} recipients",
            total_recipients=delivered,
            variants=results,
        )

    async def get_results(self, experiment_name: str) -> ExperimentResultsResponse:
        experiment = await self.get_experiment_by_name(experiment_name)
        counts = variant_counts(experiment)
        significance = leader_significance(counts, experiment.confidence_threshold)

        return ExperimentResultsResponse(
            experiment=experiment.name,
            status=experiment.status,
            primary_metric=experiment.primary_metric,
            leader=determine_winner(counts),
            winner=experiment.winner,
            variants=[
                VariantRate(name=c.name, impressions=c.impressions, count=c.successes, rate=c.rate)
                for c in counts
            ],
            significance=SignificanceResult(**asdict(significance)) if significance else None,
        )

    def to_response(self, experiment: Experiment) -> ExperimentResponse:
        return ExperimentResponse(
            id=experiment.id,
            name=experiment.name,
            description=experiment.description,
            segment=experiment.segment,
            status=experiment.status,
            start_date=experiment.start_date,
            end_date=experiment.end_date,
            duration_days=experiment.duration_days,
            primary_metric=experiment.primary_metric,
            confidence_threshold=experiment.confidence_threshold,
            winner=experiment.winner,
            variants=[
                VariantResponse(
                    name=v.name,
                    title=v.title,
                    content=v.content,
                    weight=v.weight,
                    additional_data=v.additional_data or {},
                    metrics=VariantMetrics(**v.metrics),
                )
                for v in experiment.variants
            ],
            created_at=experiment.created_at,
            updated_at=experiment.updated_at,
        )
