"""
Segment routes.

Reads (the segment, its users, device handles and metrics) address a segment
by its unique name, the same key experiments use to target it. Update, delete
and refresh-size take the segment id returned on creation.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from pushlab.api.deps import get_user_directory
from pushlab.core.database import get_db
from pushlab.models.schemas import (
    CreateSegmentRequest,
    DirectoryUserResponse,
    RunSegmentationResponse,
    SegmentDeviceHandlesResponse,
    SegmentInsightsResponse,
    SegmentListResponse,
    SegmentMembersResponse,
    SegmentResponse,
    SegmentSizeResponse,
    SegmentationMetadataResponse,
    UpdateSegmentRequest,
    UserAnalyticsRefreshResponse,
)
from pushlab.services.directory import UserDirectory
from pushlab.services.segmentation.insights import summarize_members
from pushlab.services.segmentation.service import SegmentationService, build_rule_metadata

router = APIRouter()


@router.get("", response_model=SegmentListResponse)
async def list_segments(
    active: bool = Query(True, description="Only active (or only inactive) segments"),
    include_inactive: bool = Query(False, description="Ignore the active filter"),
    tag: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    directory: UserDirectory = Depends(get_user_directory),
):
    service = SegmentationService(db, directory)
    segments = await service.list_segments(
        active=None if include_inactive else active, tag=tag, limit=limit, offset=offset
    )

    return SegmentListResponse(
        segments=[SegmentResponse.model_validate(s) for s in segments], total=len(segments)
    )


@router.get("/metadata", response_model=SegmentationMetadataResponse)
async def get_segmentation_metadata():
    return build_rule_metadata()


@router.post("/run-segmentation", response_model=RunSegmentationResponse)
async def run_segmentation(
    db: AsyncSession = Depends(get_db), directory: UserDirectory = Depends(get_user_directory)
):
    service = SegmentationService(db, directory)
    return await service.run_segmentation()


@router.post("/update-user-analytics", response_model=UserAnalyticsRefreshResponse)
async def update_user_analytics(
    db: AsyncSession = Depends(get_db), directory: UserDirectory = Depends(get_user_directory)
):
    service = SegmentationService(db, directory)
    result = await service.refresh_user_analytics()
    return UserAnalyticsRefreshResponse(updated_users=result.updated_users, errors=result.errors)


@router.post("", response_model=SegmentResponse, status_code=201)
async def create_segment(
    request: CreateSegmentRequest,
    db: AsyncSession = Depends(get_db),
    directory: UserDirectory = Depends(get_user_directory),
):
    service = SegmentationService(db, directory)
    segment = await service.create_segment(request)
    return SegmentResponse.model_validate(segment)


@router.get("/{segment_name}", response_model=SegmentResponse)
async def get_segment(
    segment_name: str,
    db: AsyncSession = Depends(get_db),
    directory: UserDirectory = Depends(get_user_directory),
):
    """Fetch a segment by its unique name."""
    service = SegmentationService(db, directory)
    segment = await service.get_segment_by_name(segment_name)
    return SegmentResponse.model_validate(segment)


@router.patch("/{segment_id}", response_model=SegmentResponse)
async def update_segment(
    segment_id: str,
    request: UpdateSegmentRequest,
    db: AsyncSession = Depends(get_db),
    directory: UserDirectory = Depends(get_user_directory),
):
    """Update a segment by id. Renaming is refused while experiments target it."""
    service = SegmentationService(db, directory)
    segment = await service.update_segment(segment_id, request)
    return SegmentResponse.model_validate(segment)


@router.delete("/{segment_id}", status_code=204)
async def delete_segment(
    segment_id: str,
    db: AsyncSession = Depends(get_db),
    directory: UserDirectory = Depends(get_user_directory),
):
    """Delete a segment by id."""
    service = SegmentationService(db, directory)
    await service.delete_segment(segment_id)
    return None


@router.get("/{segment_name}/users", response_model=SegmentMembersResponse)
async def get_segment_users(
    segment_name: str,
    db: AsyncSession = Depends(get_db),
    directory: UserDirectory = Depends(get_user_directory),
):
    """Current members of the segment with this name."""
    service = SegmentationService(db, directory)
    users = await service.resolve_members(segment_name)

    return SegmentMembersResponse(
        segment=segment_name,
        count=len(users),
        users=[DirectoryUserResponse.model_validate(u) for u in users],
    )


@router.get("/{segment_name}/device-handles", response_model=SegmentDeviceHandlesResponse)
async def get_segment_device_handles(
    segment_name: str,
    db: AsyncSession = Depends(get_db),
    directory: UserDirectory = Depends(get_user_directory),
):
    """Deduplicated device handles of the segment with this name."""
    service = SegmentationService(db, directory)
    handles = await service.collect_device_handles(segment_name)
    return SegmentDeviceHandlesResponse(
        segment=segment_name, count=len(handles), device_handles=handles
    )


@router.get("/{segment_name}/metrics", response_model=SegmentInsightsResponse)
async def get_segment_metrics(
    segment_name: str,
    db: AsyncSession = Depends(get_db),
    directory: UserDirectory = Depends(get_user_directory),
):
    """Member insights for the segment with this name."""
    service = SegmentationService(db, directory)
    segment = await service.get_segment_by_name(segment_name)
    users = await service.resolve_members(segment)

    return SegmentInsightsResponse(
        segment=SegmentResponse.model_validate(segment),
        user_count=len(users),
        metrics=summarize_members(users),
    )


@router.post("/{segment_id}/refresh-size", response_model=SegmentSizeResponse)
async def refresh_segment_size(
    segment_id: str,
    db: AsyncSession = Depends(get_db),
    directory: UserDirectory = Depends(get_user_directory),
):
    """Recount the members of the segment with this id."""
    service = SegmentationService(db, directory)
    segment = await service.get_segment(segment_id)
    size = await service.refresh_size(segment)

    return SegmentSizeResponse(
        segment=segment.name, estimated_size=size, last_size_update=segment.last_size_update
    )
