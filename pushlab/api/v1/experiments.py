"""
Experiment routes.

Reads, results, sends and tracking address an experiment by its unique name,
which is what campaign tooling and client apps know. Mutations and lifecycle
transitions (update, delete, start, pause, complete, cancel) take the
experiment id returned on creation.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from pushlab.api.deps import get_user_directory
from pushlab.core.database import get_db
from pushlab.models.experiment import ExperimentStatus
from pushlab.models.schemas import (
    CreateExperimentRequest,
    ExperimentListResponse,
    ExperimentResponse,
    ExperimentResultsResponse,
    SendExperimentRequest,
    SendExperimentResponse,
    TrackMetricRequest,
    TrackMetricResponse,
    UpdateExperimentRequest,
)
from pushlab.services.directory import UserDirectory
from pushlab.services.experiments.service import ExperimentService
from pushlab.services.push import PushSender, get_push_sender
from pushlab.services.segmentation.service import SegmentationService

router = APIRouter()


def get_experiment_service(
    db: AsyncSession = Depends(get_db),
    directory: UserDirectory = Depends(get_user_directory),
    sender: PushSender = Depends(get_push_sender),
) -> ExperimentService:
    return ExperimentService(db, SegmentationService(db, directory), sender)


@router.post("", response_model=ExperimentResponse, status_code=201)
async def create_experiment(
    request: CreateExperimentRequest, service: ExperimentService = Depends(get_experiment_service)
):
    experiment = await service.create_experiment(request)
    return service.to_response(experiment)


@router.get("", response_model=ExperimentListResponse)
async def list_experiments(
    status: Optional[ExperimentStatus] = Query(None, description="Filter by status"),
    segment: Optional[str] = Query(None, description="Filter by targeted segment"),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    service: ExperimentService = Depends(get_experiment_service),
):
    experiments = await service.list_experiments(
        status=status, segment=segment, limit=limit, offset=offset
    )

    return ExperimentListResponse(
        experiments=[service.to_response(e) for e in experiments], total=len(experiments)
    )


@router.post(
    "/track/{experiment_name}/{variant_name}/{metric}", response_model=TrackMetricResponse
)
async def track_metric(
    experiment_name: str,
    variant_name: str,
    metric: str,
    request: Optional[TrackMetricRequest] = None,
    service: ExperimentService = Depends(get_experiment_service),
):
    """Increment a variant counter. Addressed by experiment and variant name."""
    increment = request.value if request else 1
    value = await service.record_metric(experiment_name, variant_name, metric, increment)
    return TrackMetricResponse(
        experiment=experiment_name, variant=variant_name, metric=metric, value=value
    )


@router.get("/{experiment_name}", response_model=ExperimentResponse)
async def get_experiment(
    experiment_name: str, service: ExperimentService = Depends(get_experiment_service)
):
    """Fetch an experiment by its unique name."""
    experiment = await service.get_experiment_by_name(experiment_name)
    return service.to_response(experiment)


@router.get("/{experiment_name}/results", response_model=ExperimentResultsResponse)
async def get_experiment_results(
    experiment_name: str, service: ExperimentService = Depends(get_experiment_service)
):
    """Per-variant rates and significance for the experiment with this name."""
    return await service.get_results(experiment_name)


@router.patch("/{experiment_id}", response_model=ExperimentResponse)
async def update_experiment(
    experiment_id: str,
    request: UpdateExperimentRequest,
    service: ExperimentService = Depends(get_experiment_service),
):
    """Update an experiment by id. Restricted fields are frozen once started."""
    experiment = await service.update_experiment(experiment_id, request)
    return service.to_response(experiment)


@router.delete("/{experiment_id}", status_code=204)
async def delete_experiment(
    experiment_id: str, service: ExperimentService = Depends(get_experiment_service)
):
    """Delete an experiment by id. Active experiments cannot be deleted."""
    await service.delete_experiment(experiment_id)
    return None


@router.post("/{experiment_id}/start", response_model=ExperimentResponse)
async def start_experiment(
    experiment_id: str, service: ExperimentService = Depends(get_experiment_service)
):
    """Start or resume the experiment with this id."""
    return service.to_response(await service.start_experiment(experiment_id))


@router.post("/{experiment_id}/pause", response_model=ExperimentResponse)
async def pause_experiment(
    experiment_id: str, service: ExperimentService = Depends(get_experiment_service)
):
    """Pause the active experiment with this id."""
    return service.to_response(await service.pause_experiment(experiment_id))


@router.post("/{experiment_id}/complete", response_model=ExperimentResponse)
async def complete_experiment(
    experiment_id: str, service: ExperimentService = Depends(get_experiment_service)
):
    """Complete the experiment with this id and record the winner."""
    return service.to_response(await service.complete_experiment(experiment_id))


@router.post("/{experiment_id}/cancel", response_model=ExperimentResponse)
async def cancel_experiment(
    experiment_id: str, service: ExperimentService = Depends(get_experiment_service)
):
    """Cancel the active experiment with this id."""
    return service.to_response(await service.cancel_experiment(experiment_id))


@router.post("/{experiment_name}/send", response_model=SendExperimentResponse)
async def send_experiment(
    experiment_name: str,
    request: Optional[SendExperimentRequest] = None,
    service: ExperimentService = Depends(get_experiment_service),
):
    """Dispatch the experiment with this name to its segment."""
    extra = request.additional_data if request else {}
    return await service.send_experiment(experiment_name, extra)
