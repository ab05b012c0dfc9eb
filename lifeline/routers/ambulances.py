import logging

from fastapi import APIRouter, Depends, HTTPException

from lifeline.dependencies import Services, get_acting_user, get_services
from lifeline.errors import AmbulanceAccessDenied, AmbulanceNotFound, ConcurrentConflict
from lifeline.models.emergency import Emergency
from lifeline.models.fleet import Ambulance, AmbulanceStatus, LocationReport

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/ambulances", tags=["ambulances"])


@router.get("/hospital/{hospital_id}", response_model=list[Ambulance])
async def list_hospital_ambulances(
    hospital_id: str,
    status: AmbulanceStatus | None = None,
    services: Services = Depends(get_services),
):
    return await services.store.list_hospital_ambulances(hospital_id, status)


@router.get("/{ambulance_id}", response_model=Ambulance)
async def get_ambulance(ambulance_id: str, services: Services = Depends(get_services)):
    ambulance = await services.store.get_ambulance(ambulance_id)
    if not ambulance:
        raise HTTPException(status_code=404, detail="Ambulance not found")
    return ambulance


@router.put("/{ambulance_id}/location")
async def update_ambulance_location(
    ambulance_id: str,
    body: LocationReport,
    services: Services = Depends(get_services),
    user_id: str | None = Depends(get_acting_user),
):
    """Position report from the ambulance's driver."""
    try:
        ambulance = await services.location_tracker.report_location(ambulance_id, body, user_id)
    except AmbulanceNotFound:
        raise HTTPException(status_code=404, detail="Ambulance not found") from None
    except AmbulanceAccessDenied:
        raise HTTPException(status_code=403, detail="Not authorized to update this ambulance location") from None
    except ConcurrentConflict as e:
        raise HTTPException(status_code=409, detail=str(e)) from None
    return {
        "message": "Location updated successfully",
        "location": ambulance.current_location.model_dump(mode="json"),
    }


@router.get("/{ambulance_id}/emergency", response_model=Emergency | None)
async def get_ambulance_emergency(ambulance_id: str, services: Services = Depends(get_services)):
    """The emergency the ambulance is currently serving, or null."""
    ambulance = await services.store.get_ambulance(ambulance_id)
    if not ambulance:
        raise HTTPException(status_code=404, detail="Ambulance not found")
    if not ambulance.current_emergency_id:
        return None
    return await services.store.get_emergency(ambulance.current_emergency_id)
