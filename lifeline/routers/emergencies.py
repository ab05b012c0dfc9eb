import logging

from fastapi import APIRouter, Depends, HTTPException

from lifeline.dependencies import Services, get_acting_user, get_services
from lifeline.errors import (
    ConcurrentConflict,
    EmergencyNotFound,
    InvalidTransition,
    NoHospitalAvailable,
)
from lifeline.models.emergency import (
    DispatchResult,
    Emergency,
    EmergencyCreate,
    EmergencyStatus,
    EmergencyStatusUpdate,
    TimelineEntry,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/emergencies", tags=["emergencies"])


@router.post("", response_model=DispatchResult, status_code=201)
async def create_emergency(
    body: EmergencyCreate,
    services: Services = Depends(get_services),
    user_id: str | None = Depends(get_acting_user),
):
    """Create an emergency request and dispatch the nearest available ambulance."""
    if not user_id:
        raise HTTPException(status_code=401, detail="Missing user identity")
    try:
        return await services.dispatch_engine.create_emergency(
            patient_id=user_id,
            location=body.location,
            medical_info=body.medical_info,
            priority=body.priority,
        )
    except NoHospitalAvailable as e:
        raise HTTPException(status_code=503, detail=str(e)) from None
    except ConcurrentConflict as e:
        raise HTTPException(status_code=409, detail=str(e)) from None


@router.get("/hospital/{hospital_id}", response_model=list[Emergency])
async def list_hospital_emergencies(
    hospital_id: str,
    status: EmergencyStatus | None = None,
    services: Services = Depends(get_services),
):
    """Emergencies routed to a hospital, newest first."""
    return await services.store.list_hospital_emergencies(hospital_id, status.value if status else None)


@router.get("/user/{user_id}", response_model=list[Emergency])
async def list_user_emergencies(user_id: str, services: Services = Depends(get_services)):
    return await services.store.list_patient_emergencies(user_id)


@router.get("/{emergency_id}", response_model=Emergency)
async def get_emergency(emergency_id: str, services: Services = Depends(get_services)):
    emergency = await services.store.get_emergency(emergency_id)
    if not emergency:
        raise HTTPException(status_code=404, detail="Emergency not found")
    return emergency


@router.get("/{emergency_id}/timeline", response_model=list[TimelineEntry])
async def get_emergency_timeline(emergency_id: str, services: Services = Depends(get_services)):
    emergency = await services.store.get_emergency(emergency_id)
    if not emergency:
        raise HTTPException(status_code=404, detail="Emergency not found")
    return emergency.timeline


@router.put("/{emergency_id}/status", response_model=Emergency)
async def update_emergency_status(
    emergency_id: str,
    body: EmergencyStatusUpdate,
    services: Services = Depends(get_services),
    user_id: str | None = Depends(get_acting_user),
):
    """Move an emergency through its lifecycle."""
    try:
        return await services.state_machine.transition(
            emergency_id, body.status, notes=body.notes, acting_user_id=user_id
        )
    except EmergencyNotFound:
        raise HTTPException(status_code=404, detail="Emergency not found") from None
    except (InvalidTransition, ConcurrentConflict) as e:
        raise HTTPException(status_code=409, detail=str(e)) from None


@router.post("/{emergency_id}/retry-dispatch", response_model=DispatchResult)
async def retry_dispatch(emergency_id: str, services: Services = Depends(get_services)):
    """Try again to find an ambulance for an emergency still Pending."""
    try:
        return await services.dispatch_engine.retry_pending(emergency_id)
    except EmergencyNotFound:
        raise HTTPException(status_code=404, detail="Emergency not found") from None
    except (InvalidTransition, ConcurrentConflict) as e:
        raise HTTPException(status_code=409, detail=str(e)) from None
