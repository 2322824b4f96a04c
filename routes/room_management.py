from fastapi import APIRouter, HTTPException, Request, status
import logging
from models.schemas import MemberInfo, RoomInfo, RoomListResponse
from room_manager import Room, RoomRegistry

logger = logging.getLogger(__name__)
router = APIRouter()

def get_registry(request: Request) -> RoomRegistry:
    return request.app.state.registry

def room_info(room: Room, registry: RoomRegistry) -> RoomInfo:
    return RoomInfo(
        roomId=room.room_id,
        adminUserId=room.admin_user_id,
        numMembers=len(room.members),
        maxMembers=registry.max_user_count,
        members=[
            MemberInfo(userId=member.user_id, isAdmin=member.user_id == room.admin_user_id)
            for member in room.members
        ],
        isFull=registry.is_full(room),
    )

@router.get("/rooms", response_model=RoomListResponse)
async def list_rooms(request: Request):
    """
    List all active signaling rooms
    """
    registry = get_registry(request)
    room_list = [room_info(room, registry) for room in registry.rooms()]
    return RoomListResponse(rooms=room_list, total=len(room_list))

@router.get("/room/{room_id}", response_model=RoomInfo)
async def get_room_info(room_id: str, request: Request):
    """
    Get membership information about a specific room
    """
    registry = get_registry(request)
    room = registry.find_room(room_id)
    if room is None:
        logger.info(f"Room info requested for unknown room: {room_id}")
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Room '{room_id}' not found"
        )
    return room_info(room, registry)
