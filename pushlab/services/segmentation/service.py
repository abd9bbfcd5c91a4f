import uuid
from datetime import datetime, timezone
from typing import List, Optional, Union

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pushlab.core.exceptions import NotFoundError, PushlabError, StateError, ValidationError
from pushlab.models.experiment import Experiment
from pushlab.models.schemas import (
    CreateSegmentRequest,
    OperatorInfo,
    RuleFieldInfo,
    RuleTypeInfo,
    RunSegmentationResponse,
    SegmentationMetadataResponse,
    SegmentRefreshEntry,
    SegmentRefreshError,
    UpdateSegmentRequest,
)
from pushlab.models.segment import Segment
from pushlab.services.directory import AnalyticsRefreshResult, DirectoryUser, UserDirectory
from pushlab.services.segmentation.compiler import (
    OPERATOR_KINDS,
    OPERATOR_LABELS,
    VALUELESS_OPERATORS,
    compile_rules,
    validate_rules,
)
from pushlab.services.segmentation.fields import RULE_TYPE_LABELS, fields_for

logger = structlog.get_logger()


class SegmentationService:
    def __init__(self, db: AsyncSession, directory: UserDirectory):
        self.db = db
        self.directory = directory

    # Registry

    async def list_segments(
        self,
        active: Optional[bool] = True,
        tag: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Segment]:
        query = select(Segment).order_by(Segment.created_at.desc(), Segment.name)

        if active is not None:
            query = query.where(Segment.active.is_(active))

        result = await self.db.execute(query)
        segments = list(result.scalars().all())

        # Tags live in a JSON list; filter here to stay dialect independent
        if tag:
            segments = [s for s in segments if tag in (s.tags or [])]

        end = offset + limit if limit is not None else None
        return segments[offset:end]

    async def get_segment(self, segment_id: str) -> Segment:
        segment = await self.db.get(Segment, segment_id)
        if segment is None:
            raise NotFoundError(f"Segment with id '{segment_id}' not found")
        return segment

    async def get_segment_by_name(self, name: str) -> Segment:
        result = await self.db.execute(select(Segment).where(Segment.name == name))
        segment = result.scalar_one_or_none()
        if segment is None:
            raise NotFoundError(f"Segment '{name}' not found")
        return segment

    async def _ensure_name_available(self, name: str, exclude_id: Optional[str] = None) -> None:
        query = select(Segment.id).where(Segment.name == name)
        if exclude_id:
            query = query.where(Segment.id != exclude_id)
        result = await self.db.execute(query)
        if result.first() is not None:
            raise ValidationError(f"Segment '{name}' already exists", field="name")

    async def _ensure_not_referenced(self, segment: Segment) -> None:
        result = await self.db.execute(
            select(Experiment.name).where(Experiment.segment == segment.name).limit(1)
        )
        experiment = result.scalar_one_or_none()
        if experiment is not None:
            raise StateError(
                f"Segment '{segment.name}' cannot be renamed while experiment "
                f"'{experiment}' targets it",
                field="name",
            )

    async def create_segment(self, request: CreateSegmentRequest) -> Segment:
        rules = validate_rules([rule.model_dump() for rule in request.rules])
        await self._ensure_name_available(request.name)

        segment = Segment(
            id=str(uuid.uuid4()),
            name=request.name,
            description=request.description,
            rules=rules,
            tags=request.tags,
            active=request.active,
            estimated_size=0,
            metadata_=request.metadata or {},
        )

        self.db.add(segment)
        await self.db.commit()
        await self.db.refresh(segment)

        logger.info("segment_created", segment=segment.name, rules=len(rules))

        if segment.active:
            await self.refresh_size(segment)

        return segment

    async def update_segment(self, segment_id: str, request: UpdateSegmentRequest) -> Segment:
        segment = await self.get_segment(segment_id)
        changes = request.model_dump(exclude_unset=True)

        renamed = changes.get("name") is not None and changes["name"] != segment.name
        if renamed:
            # Experiments hold the segment by name
            await self._ensure_not_referenced(segment)
            await self._ensure_name_available(changes["name"], exclude_id=segment.id)

        rules_changed = "rules" in changes and changes["rules"] is not None
        if rules_changed:
            segment.rules = validate_rules(changes["rules"])

        if renamed:
            segment.name = changes["name"]
        if changes.get("description") is not None:
            segment.description = changes["description"]
        if changes.get("tags") is not None:
            segment.tags = list(dict.fromkeys(t.strip() for t in changes["tags"] if t.strip()))
        if changes.get("active") is not None:
            segment.active = changes["active"]
        if changes.get("metadata") is not None:
            segment.metadata_ = changes["metadata"]

        await self.db.commit()
        await self.db.refresh(segment)

        if rules_changed and segment.active:
            await self.refresh_size(segment)

        return segment

    async def delete_segment(self, segment_id: str) -> None:
        # Experiments referencing this segment are left untouched
        segment = await self.get_segment(segment_id)
        await self.db.delete(segment)
        await self.db.commit()
        logger.info("segment_deleted", segment=segment.name)

    # Membership

    async def _resolve(self, segment: Union[Segment, str]) -> Segment:
        if isinstance(segment, Segment):
            return segment
        return await self.get_segment_by_name(segment)

    async def resolve_members(self, segment: Union[Segment, str]) -> List[DirectoryUser]:
        segment = await self._resolve(segment)
        if not segment.active:
            raise StateError(f"Segment '{segment.name}' is not active", status="inactive")

        predicate = compile_rules(segment.rules)
        return await self.directory.find_by_predicate(predicate)

    async def refresh_size(self, segment: Union[Segment, str]) -> int:
        segment = await self._resolve(segment)
        members = await self.resolve_members(segment)
        count = len(members)

        segment.estimated_size = count
        segment.last_size_update = datetime.now(timezone.utc)
        await self.db.commit()
        await self.db.refresh(segment)

        logger.info("segment_size_refreshed", segment=segment.name, size=count)
        return count

    async def collect_device_handles(self, segment: Union[Segment, str]) -> List[str]:
        members = await self.resolve_members(segment)
        handles = (handle for user in members for handle in user.device_handles or [])
        # Ordered dedupe; a user may register the same device more than once
        return list(dict.fromkeys(handles))

    async def run_segmentation(self) -> RunSegmentationResponse:
        segments = await self.list_segments(active=True)
        # Capture keys up front; a rollback expires loaded instances
        keys = [(segment.id, segment.name) for segment in segments]
        updated: List[SegmentRefreshEntry] = []
        errors: List[SegmentRefreshError] = []

        for segment_id, segment_name in keys:
            try:
                segment = await self.get_segment(segment_id)
                size = await self.refresh_size(segment)
                updated.append(SegmentRefreshEntry(id=segment_id, name=segment_name, size=size))
            except PushlabError as e:
                await self.db.rollback()
                logger.error("segment_refresh_failed", segment=segment_name, error=e.message)
                errors.append(
                    SegmentRefreshError(
                        segment_id=segment_id, segment_name=segment_name, error=e.message
                    )
                )

        logger.info("segmentation_run_completed", processed=len(updated), failed=len(errors))
        return RunSegmentationResponse(
            processed_segments=len(updated), updated_segments=updated, errors=errors
        )

    async def refresh_user_analytics(self) -> AnalyticsRefreshResult:
        result = await self.directory.refresh_derived_analytics()
        logger.info(
            "user_analytics_refreshed", updated=result.updated_users, failed=len(result.errors)
        )
        return result


def build_rule_metadata() -> SegmentationMetadataResponse:
    rule_types = [
        RuleTypeInfo(
            id=rule_type.value,
            label=label,
            fields=[
                RuleFieldInfo(
                    id=entry.field,
                    label=entry.label,
                    type=entry.kind.value,
                    path=entry.path,
                    values=list(entry.values) if entry.values else None,
                    min=entry.min,
                    max=entry.max,
                )
                for entry in fields_for(rule_type)
            ],
        )
        for rule_type, label in RULE_TYPE_LABELS.items()
    ]
    operators = [
        OperatorInfo(
            id=operator.value,
            label=OPERATOR_LABELS[operator],
            applicable_types=[kind.value for kind in kinds],
            requires_value=operator not in VALUELESS_OPERATORS,
        )
        for operator, kinds in OPERATOR_KINDS.items()
    ]
    return SegmentationMetadataResponse(rule_types=rule_types, operators=operators)
