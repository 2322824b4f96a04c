# models/schemas.py
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List, Dict

# Socket.IO payloads. Extra fields are kept so they can be passed through verbatim.
class RoomPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    roomId: str = Field(min_length=1)

class JoinPayload(RoomPayload):
    userId: str = Field(min_length=1)

# HTTP responses
class MemberInfo(BaseModel):
    userId: str
    isAdmin: bool

class RoomInfo(BaseModel):
    roomId: str
    adminUserId: Optional[str] = None
    numMembers: int
    maxMembers: int
    members: List[MemberInfo]
    isFull: bool

class RoomListResponse(BaseModel):
    rooms: List[RoomInfo]
    total: int

class HealthResponse(BaseModel):
    status: str
    rooms: int
    connections: int
    max_user_count: int

class StatusResponse(BaseModel):
    status: int
    message: str
    version: str
    endpoints: Dict[str, str]
