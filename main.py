# main.py - WebRTC signaling relay

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import logging
import uvicorn

from config.settings import get_settings, validate_environment
from models.schemas import HealthResponse, StatusResponse
from room_manager import RoomRegistry
from routes.room_management import router as room_router
from signaling import SignalingHandler, SignalingServer

VERSION = "1.0.0"

settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle app startup and shutdown"""
    logger.info("Starting up WebRTC signaling relay")
    try:
        validate_environment(settings)
        logger.info("Environment validation passed")
    except Exception as e:
        logger.error(f"Environment validation failed: {e}")
        raise

    yield

    logger.info(
        f"Shutting down WebRTC signaling relay "
        f"({len(app.state.registry)} rooms, {len(app.state.signaling.connections)} connections dropped)"
    )

app = FastAPI(
    title="WebRTC Signaling Relay",
    description="Room membership and signaling relay for peer-to-peer WebRTC sessions",
    version=VERSION,
    lifespan=lifespan,
)

# The registry is the only shared state; HTTP routes and the Socket.IO handlers get it from here
registry = RoomRegistry(max_user_count=settings.max_user_count)
signaling = SignalingServer(
    SignalingHandler(
        registry,
        relay_candidates=settings.relay_candidates,
        relay_messages=settings.relay_messages,
    ),
    cors_allowed_origins="*" if "*" in settings.allowed_origins else settings.allowed_origins,
)
app.state.registry = registry
app.state.signaling = signaling

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["DELETE", "PUT", "POST", "GET", "OPTIONS"],
    allow_headers=["content-type"],
)

app.include_router(room_router, prefix="/api", tags=["Room Management"])

# Socket.IO is served at /socket.io, everything else falls through to FastAPI
asgi_app = signaling.asgi_app(other_asgi_app=app)

@app.get("/", response_model=StatusResponse)
async def root():
    return StatusResponse(
        status=0,
        message="Signaling server is running",
        version=VERSION,
        endpoints={
            "signaling": "/socket.io",
            "list_rooms": "/api/rooms",
            "room_info": "/api/room/{room_id}",
            "health": "/health",
        },
    )

@app.get("/health", response_model=HealthResponse)
async def health_check():
    return HealthResponse(
        status="healthy",
        rooms=len(registry),
        connections=len(signaling.connections),
        max_user_count=registry.max_user_count,
    )

@app.exception_handler(500)
async def internal_server_error_handler(request: Request, exc):
    logger.error(f"Internal server error: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "message": "An unexpected error occurred"
        }
    )

@app.exception_handler(404)
async def not_found_handler(request: Request, exc):
    return JSONResponse(
        status_code=404,
        content={
            "error": "Not found",
            "message": getattr(exc, "detail", None) or "The requested endpoint does not exist",
            "available_endpoints": [
                "/",
                "/health",
                "/api/rooms",
                "/api/room/{room_id}",
                "/socket.io",
            ]
        }
    )

if __name__ == "__main__":
    uvicorn.run(
        "main:asgi_app",
        host=settings.host,
        port=settings.port,
        reload=False,
        log_level=settings.log_level.lower(),
        access_log=True,
    )
