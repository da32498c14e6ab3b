from typing import List, Optional
import uuid

from fastapi import APIRouter, Depends, Query, status

from convoyhub.api.deps import get_convoy_service, get_current_user_id, get_optional_user_id
from convoyhub.core.socket_manager import manager
from convoyhub.models.domain import (
    AddMemberRequest,
    ConvoyCreate,
    ConvoyLocation,
    ConvoyPage,
    ConvoyRead,
    ConvoyUpdate,
    JoinConvoyRequest,
    LocationUpdate,
)
from convoyhub.services.convoys import MAX_PAGE_SIZE, ConvoyService

router = APIRouter()


@router.get("/", response_model=ConvoyPage)
async def list_convoys(
    limit: int = Query(50, ge=1, le=MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    lat: Optional[float] = None,
    lng: Optional[float] = None,
    radius: float = Query(50, gt=0),
    service: ConvoyService = Depends(get_convoy_service),
):
    """
    Live public convoys. With lat/lng, only those within ``radius`` km,
    most recently updated first.
    """
    if lat is None or lng is None:
        return await service.list_live(limit=limit, offset=offset)

    return await service.nearby_page(lat, lng, radius_km=radius, limit=limit, offset=offset)


@router.post("/", response_model=ConvoyRead, status_code=status.HTTP_201_CREATED)
async def create_convoy(
    convoy_data: ConvoyCreate,
    current_user_id: int = Depends(get_current_user_id),
    service: ConvoyService = Depends(get_convoy_service),
):
    return await service.create(
        owner_id=current_user_id,
        current_center=convoy_data.current_center,
        visibility=convoy_data.visibility,
        max_members=convoy_data.max_members,
        title=convoy_data.title,
        description=convoy_data.description,
        route=convoy_data.route,
    )


@router.get("/mine", response_model=List[ConvoyRead])
async def get_my_convoys(
    limit: int = Query(20, ge=1, le=MAX_PAGE_SIZE),
    current_user_id: int = Depends(get_current_user_id),
    service: ConvoyService = Depends(get_convoy_service),
):
    return await service.list_for_user(current_user_id, limit=limit)


@router.get("/join/{join_code}", response_model=ConvoyRead)
async def get_convoy_by_join_code(
    join_code: str,
    current_user_id: int = Depends(get_current_user_id),
    service: ConvoyService = Depends(get_convoy_service),
):
    return await service.find_by_join_code(join_code)


@router.get("/{convoy_id}", response_model=ConvoyRead)
async def get_convoy(
    convoy_id: uuid.UUID,
    current_user_id: Optional[int] = Depends(get_optional_user_id),
    service: ConvoyService = Depends(get_convoy_service),
):
    return await service.get(convoy_id, viewer_id=current_user_id)


@router.patch("/{convoy_id}", response_model=ConvoyRead)
async def update_convoy(
    convoy_id: uuid.UUID,
    changes: ConvoyUpdate,
    current_user_id: int = Depends(get_current_user_id),
    service: ConvoyService = Depends(get_convoy_service),
):
    return await service.update_details(convoy_id, current_user_id, changes)


@router.delete("/{convoy_id}")
async def delete_convoy(
    convoy_id: uuid.UUID,
    current_user_id: int = Depends(get_current_user_id),
    service: ConvoyService = Depends(get_convoy_service),
):
    await service.delete(convoy_id, current_user_id)
    await manager.broadcast_status(str(convoy_id), "convoy_deleted")
    return {"status": "success", "message": "Convoy deleted"}


@router.post("/{convoy_id}/join", response_model=ConvoyRead)
async def join_convoy(
    convoy_id: uuid.UUID,
    join_req: Optional[JoinConvoyRequest] = None,
    current_user_id: int = Depends(get_current_user_id),
    service: ConvoyService = Depends(get_convoy_service),
):
    join_code = join_req.join_code if join_req else None
    convoy = await service.join(current_user_id, convoy_id=convoy_id, join_code=join_code)
    await manager.broadcast_status(str(convoy.id), "member_joined", user_id=current_user_id)
    return convoy


@router.post("/{convoy_id}/leave")
async def leave_convoy(
    convoy_id: uuid.UUID,
    current_user_id: int = Depends(get_current_user_id),
    service: ConvoyService = Depends(get_convoy_service),
):
    convoy = await service.leave(convoy_id, current_user_id)
    await manager.broadcast_status(str(convoy_id), "member_left", user_id=current_user_id, owner_id=convoy.owner_id)
    if not convoy.members:
        return {"status": "success", "message": "Convoy ended as it became empty"}
    return {"status": "success", "message": "Left convoy"}


@router.post("/{convoy_id}/members", response_model=ConvoyRead)
async def add_convoy_member(
    convoy_id: uuid.UUID,
    member: AddMemberRequest,
    current_user_id: int = Depends(get_current_user_id),
    service: ConvoyService = Depends(get_convoy_service),
):
    """Owner-only: put a user straight into the convoy (used for private convoys)."""
    convoy = await service.add_member(convoy_id, member.user_id, requester_id=current_user_id)
    await manager.broadcast_status(str(convoy_id), "member_joined", user_id=member.user_id)
    return convoy


@router.delete("/{convoy_id}/members/{user_id}", response_model=ConvoyRead)
async def remove_convoy_member(
    convoy_id: uuid.UUID,
    user_id: int,
    current_user_id: int = Depends(get_current_user_id),
    service: ConvoyService = Depends(get_convoy_service),
):
    convoy = await service.remove_member(convoy_id, user_id, requester_id=current_user_id)
    await manager.broadcast_status(str(convoy_id), "member_left", user_id=user_id, owner_id=convoy.owner_id)
    return convoy


@router.post("/{convoy_id}/start", response_model=ConvoyRead)
async def start_convoy(
    convoy_id: uuid.UUID,
    current_user_id: int = Depends(get_current_user_id),
    service: ConvoyService = Depends(get_convoy_service),
):
    convoy = await service.start(convoy_id, current_user_id)
    await manager.broadcast_status(str(convoy_id), "convoy_started")
    return convoy


@router.post("/{convoy_id}/end", response_model=ConvoyRead)
async def end_convoy(
    convoy_id: uuid.UUID,
    current_user_id: int = Depends(get_current_user_id),
    service: ConvoyService = Depends(get_convoy_service),
):
    convoy = await service.end(convoy_id, current_user_id)
    await manager.broadcast_status(str(convoy_id), "convoy_ended")
    return convoy


@router.post("/{convoy_id}/location", response_model=ConvoyLocation)
async def update_convoy_location(
    convoy_id: uuid.UUID,
    location: LocationUpdate,
    current_user_id: int = Depends(get_current_user_id),
    service: ConvoyService = Depends(get_convoy_service),
):
    center = await service.update_location(
        convoy_id,
        current_user_id,
        location.lat,
        location.lng,
        heading=location.heading,
        speed=location.speed,
        accuracy=location.accuracy,
    )
    await manager.broadcast_location(str(convoy_id), current_user_id, center)
    return center
