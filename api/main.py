"""FastAPI app: rooms, lobby, night actions, votes and phase transitions."""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Path, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.config import load_config
from api.models import (
    ROOM_CODE_PATTERN,
    AvatarRequest,
    CreateRoomRequest,
    HostRequest,
    JoinRoomRequest,
    KickRequest,
    NightActionRequest,
    PresenceRequest,
    ReadyRequest,
    RoomCreatedResponse,
    RoomLookupResponse,
    RoomStatePublic,
    SettingsRequest,
    VoteRequest,
    room_to_public,
)
from game.errors import (
    ActionAlreadySubmitted,
    ConcurrentResolutionLost,
    InvalidAction,
    InvalidPlayerCount,
    MafiaError,
    NotRoomOwner,
    UnknownEntity,
)
from game.scheduler import PhaseScheduler
from game.session import RoomSession
from game.store import RoomStore

logger = logging.getLogger(__name__)

config = load_config()
store = RoomStore()
session = RoomSession(store, default_settings=config.default_settings)
scheduler = PhaseScheduler(session, poll_interval=config.poll_interval_sec)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(level=config.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    stop = asyncio.Event()
    poller = asyncio.create_task(scheduler.run(stop)) if config.enable_poller else None
    try:
        yield
    finally:
        stop.set()
        if poller is not None:
            await poller


app = FastAPI(title="Mafia Room API", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Most specific first
_ERROR_STATUS = (
    (UnknownEntity, 404),
    (NotRoomOwner, 403),
    (ActionAlreadySubmitted, 409),
    (ConcurrentResolutionLost, 409),
    (InvalidPlayerCount, 400),
    (InvalidAction, 400),
)


@app.exception_handler(MafiaError)
async def mafia_error_handler(request: Request, exc: MafiaError):
    status = next((code for cls, code in _ERROR_STATUS if isinstance(exc, cls)), 400)
    return JSONResponse(status_code=status, content={"detail": str(exc), "error": type(exc).__name__})


def _view(room_id: str, viewer_id: str | None = None) -> RoomStatePublic:
    room, players = session.view(room_id)
    return room_to_public(room, players, viewer_id)


# ---------- rooms and lobby ----------


@app.post("/rooms", response_model=RoomCreatedResponse, tags=["Rooms"], summary="Create room")
def create_room(body: CreateRoomRequest):
    """Create a room; the caller becomes its owner."""
    room, owner = session.create_room(body.nickname)
    return RoomCreatedResponse(room_id=room.id, code=room.code, player_id=owner.id)


@app.get("/rooms/by-code/{code}", response_model=RoomLookupResponse, tags=["Rooms"], summary="Find room by code")
def find_room(code: str = Path(..., pattern=ROOM_CODE_PATTERN)):
    room = session.find_room_by_code(code)
    return RoomLookupResponse(room_id=room.id, code=room.code, status=room.status)


@app.get("/rooms/{room_id}", response_model=RoomStatePublic, tags=["Rooms"], summary="Get room state")
def get_room(room_id: str, viewer_id: str | None = None):
    """Room projection as seen by viewer_id (roles and private results hidden otherwise)."""
    return _view(room_id, viewer_id)


@app.post("/rooms/{room_id}/players", response_model=RoomCreatedResponse, tags=["Lobby"], summary="Join room")
def join_room(room_id: str, body: JoinRoomRequest):
    player = session.join_room(room_id, body.nickname)
    room = session.get_room(room_id)
    return RoomCreatedResponse(room_id=room.id, code=room.code, player_id=player.id)


@app.delete("/rooms/{room_id}/players/{player_id}", response_model=RoomStatePublic, tags=["Lobby"], summary="Leave room")
def leave_room(room_id: str, player_id: str):
    session.leave_room(room_id, player_id)
    return _view(room_id)


@app.post("/rooms/{room_id}/players/{player_id}/ready", response_model=RoomStatePublic, tags=["Lobby"])
def set_ready(room_id: str, player_id: str, body: ReadyRequest):
    session.set_ready(room_id, player_id, body.is_ready)
    return _view(room_id, player_id)


@app.post("/rooms/{room_id}/players/{player_id}/avatar", response_model=RoomStatePublic, tags=["Lobby"])
def set_avatar(room_id: str, player_id: str, body: AvatarRequest):
    session.set_avatar(room_id, player_id, body.avatar)
    return _view(room_id, player_id)


@app.post("/rooms/{room_id}/players/{player_id}/presence", response_model=RoomStatePublic, tags=["Lobby"])
def set_presence(room_id: str, player_id: str, body: PresenceRequest):
    """Heartbeat / connection flag."""
    session.set_connection(room_id, player_id, body.is_connected)
    return _view(room_id, player_id)


@app.post("/rooms/{room_id}/kick", response_model=RoomStatePublic, tags=["Lobby"], summary="Kick player (owner)")
def kick_player(room_id: str, body: KickRequest):
    session.kick_player(room_id, body.player_id, body.target_player_id)
    return _view(room_id, body.player_id)


@app.post("/rooms/{room_id}/settings", response_model=RoomStatePublic, tags=["Lobby"], summary="Phase durations (owner)")
def update_settings(room_id: str, body: SettingsRequest):
    session.update_settings(room_id, body.player_id, body.night_sec, body.day_sec, body.vote_sec)
    return _view(room_id, body.player_id)


# ---------- game loop ----------


@app.post("/rooms/{room_id}/start", response_model=RoomStatePublic, tags=["Game"], summary="Start game (owner)")
def start_game(room_id: str, body: HostRequest):
    try:
        session.start_game(room_id, requested_by=body.player_id)
    except ConcurrentResolutionLost as e:
        logger.debug("Start lost race: %s", e)
    return _view(room_id, body.player_id)


@app.post("/rooms/{room_id}/night-action", response_model=RoomStatePublic, tags=["Game"], summary="Submit night action")
def submit_night_action(room_id: str, body: NightActionRequest):
    session.submit_night_action(room_id, body.role, body.actor_player_id, body.target_player_id)
    return _view(room_id, body.actor_player_id)


@app.post("/rooms/{room_id}/vote", response_model=RoomStatePublic, tags=["Game"], summary="Submit vote")
def submit_vote(room_id: str, body: VoteRequest):
    session.submit_vote(room_id, body.voter_player_id, body.target_player_id)
    return _view(room_id, body.voter_player_id)


def _forced(room_id: str, player_id: str, transition) -> RoomStatePublic:
    """Run an owner-forced transition; a lost race just returns the current state."""
    try:
        transition(room_id, requested_by=player_id)
    except ConcurrentResolutionLost as e:
        logger.debug("Forced transition lost race: %s", e)
    return _view(room_id, player_id)


@app.post("/rooms/{room_id}/resolve-night", response_model=RoomStatePublic, tags=["Game"], summary="Resolve night now (owner)")
def resolve_night(room_id: str, body: HostRequest):
    return _forced(room_id, body.player_id, session.resolve_night)


@app.post("/rooms/{room_id}/start-vote", response_model=RoomStatePublic, tags=["Game"], summary="Start vote now (owner)")
def start_vote(room_id: str, body: HostRequest):
    return _forced(room_id, body.player_id, session.start_vote)


@app.post("/rooms/{room_id}/resolve-vote", response_model=RoomStatePublic, tags=["Game"], summary="Resolve vote now (owner)")
def resolve_vote(room_id: str, body: HostRequest):
    return _forced(room_id, body.player_id, session.resolve_vote)


@app.post("/rooms/{room_id}/force-advance", response_model=RoomStatePublic, tags=["Game"], summary="Advance current phase now (owner)")
def force_advance(room_id: str, body: HostRequest):
    scheduler.force_resolve(room_id, requested_by=body.player_id)
    return _view(room_id, body.player_id)


@app.post("/rooms/{room_id}/advance", response_model=RoomStatePublic, tags=["Game"], summary="Advance if expired")
def advance(room_id: str, viewer_id: str | None = None):
    """Advance the current phase if its deadline has passed; otherwise a no-op."""
    scheduler.advance_if_expired(room_id)
    return _view(room_id, viewer_id)


@app.get("/health", tags=["System"], summary="Health check")
def health():
    return {"status": "ok"}


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    import uvicorn

    uvicorn.run("api.main:app", host="0.0.0.0", port=8000)
