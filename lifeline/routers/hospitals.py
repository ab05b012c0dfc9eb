from fastapi import APIRouter, Depends, HTTPException, Query

from lifeline.dependencies import Services, get_services
from lifeline.models.fleet import Hospital, NearbyHospital

router = APIRouter(prefix="/api/hospitals", tags=["hospitals"])


@router.get("/nearest", response_model=list[NearbyHospital])
async def get_nearest_hospitals(
    lat: float = Query(..., ge=-90, le=90),
    lng: float = Query(..., ge=-180, le=180),
    max_distance: float = Query(10000, gt=0, le=200000),
    services: Services = Depends(get_services),
):
    """Up to 10 active hospitals within ``max_distance`` meters, nearest first."""
    return await services.geo_index.nearest_hospitals((lng, lat), max_distance, limit=10)


@router.get("/{hospital_id}", response_model=Hospital)
async def get_hospital(hospital_id: str, services: Services = Depends(get_services)):
    hospital = await services.store.get_hospital(hospital_id)
    if not hospital:
        raise HTTPException(status_code=404, detail="Hospital not found")
    return hospital
