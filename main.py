import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer

from chat import ERROR, ChatRouter, ChatTransport, WebSocketConnection
from database import DocumentStore, open_store
from errors import AuthenticationError, DependencyError, ServiceError, ValidationError
from gigs import GigService
from homes import PRIVATE_DATA, PUBLIC_DATA, HomeService
from identity import IdentityProvider
from inbox import InboxService
from logging_config import setup_logging
from mailer import Mailer
from schemas import (
    AdIn,
    GigIn,
    GigStatusUpdate,
    HomeDataIn,
    HomeIn,
    HomeUpdate,
    LoginPayload,
    OccupantPayload,
    ProfileUpdate,
    RegisterPayload,
)
from security import Authenticator
from settings import Settings, load_settings
from throttling import AttemptThrottle
from users import UserService

logger = logging.getLogger("oodoo.api")

router = APIRouter()

# Auth setup
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/users/login", auto_error=False)


def get_current_user_id(request: Request, token: Optional[str] = Depends(oauth2_scheme)) -> str:
    return request.app.state.authenticator.authenticate(token)


def get_gigs(request: Request) -> GigService:
    return request.app.state.gigs


def get_users(request: Request) -> UserService:
    return request.app.state.users


def get_homes(request: Request) -> HomeService:
    return request.app.state.homes


def get_inbox(request: Request) -> InboxService:
    return request.app.state.inbox


def client_key(request: Request) -> str:
    return request.client.host if request.client else "unknown"


# Error handlers

async def service_error_handler(request: Request, exc: ServiceError):
    if isinstance(exc, DependencyError):
        logger.error("%s %s failed: %r", request.method, request.url.path, exc.__cause__ or exc, exc_info=exc)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def request_validation_handler(request: Request, exc: RequestValidationError):
    details = []
    for err in exc.errors():
        loc = err.get("loc", ())
        field = ".".join(str(part) for part in (loc[1:] if len(loc) > 1 else loc))
        details.append(f"{field}: {err.get('msg')}")
    body = ValidationError().to_dict()
    body["details"] = details
    return JSONResponse(status_code=400, content=body)


# Public endpoints
@router.get("/", tags=["meta"])
def read_root():
    return {"message": "Oodoo backend running"}


@router.get("/health", tags=["meta"])
def health(request: Request):
    store = request.app.state.store
    response = {
        "backend": "running",
        "store": type(store).__name__,
        "connection_status": "Not Connected",
    }
    if store.ping():
        response["connection_status"] = "Connected"
    return response


# Users
@router.post("/users/register", tags=["users"])
def register(payload: RegisterPayload, users: UserService = Depends(get_users)):
    return users.register(payload)


@router.post("/users/login", tags=["users"])
def login(payload: LoginPayload, request: Request, users: UserService = Depends(get_users)):
    request.app.state.login_throttle.hit(client_key(request))
    return users.login(payload.email, payload.password)


@router.get("/users/profile", tags=["users"])
def read_profile(user_id: str = Depends(get_current_user_id), users: UserService = Depends(get_users)):
    return {"data": users.get_profile(user_id)}


@router.patch("/users/profile", tags=["users"])
def edit_profile(body: ProfileUpdate, user_id: str = Depends(get_current_user_id),
                 users: UserService = Depends(get_users)):
    return {"data": users.update_profile(user_id, body)}


@router.get("/users/verify-email", tags=["users"])
def verify_email(token: str = Query(..., min_length=1), users: UserService = Depends(get_users)):
    return users.verify_email(token)


# Gigs
@router.post("/gigs", status_code=201, tags=["gigs"])
def create_gig(body: GigIn, user_id: str = Depends(get_current_user_id), gigs: GigService = Depends(get_gigs)):
    return gigs.create_gig(user_id, body)


@router.get("/gigs", tags=["gigs"])
def list_gigs(
    limit: int = 10,
    offset: int = 0,
    status: Optional[str] = None,
    sort: Optional[str] = None,
    gigs: GigService = Depends(get_gigs),
):
    return gigs.list_gigs(status=status, sort=sort, limit=limit, offset=offset)


@router.get("/gigs/user/{user_id}", tags=["gigs"])
def list_user_gigs(user_id: str, caller_id: str = Depends(get_current_user_id),
                   gigs: GigService = Depends(get_gigs)):
    return gigs.list_user_gigs(caller_id, user_id)


@router.get("/gigs/{gig_id}", tags=["gigs"])
def read_gig(gig_id: str, gigs: GigService = Depends(get_gigs)):
    return gigs.get_gig(gig_id)


@router.post("/gigs/{gig_id}/accept", tags=["gigs"])
def accept_gig(gig_id: str, user_id: str = Depends(get_current_user_id), gigs: GigService = Depends(get_gigs)):
    return gigs.accept_gig(gig_id, user_id)


@router.patch("/gigs/{gig_id}/status", tags=["gigs"])
def update_gig_status(gig_id: str, body: GigStatusUpdate, user_id: str = Depends(get_current_user_id),
                      gigs: GigService = Depends(get_gigs)):
    return gigs.update_status(gig_id, body.status, user_id)


@router.get("/gigs/{gig_id}/location", tags=["gigs"])
def read_gig_location(gig_id: str, user_id: str = Depends(get_current_user_id),
                      gigs: GigService = Depends(get_gigs)):
    return gigs.get_exact_location(gig_id, user_id)


@router.get("/gigs/{gig_id}/assignments/{assignee_id}", tags=["gigs"])
def read_assignment(gig_id: str, assignee_id: str, user_id: str = Depends(get_current_user_id),
                    gigs: GigService = Depends(get_gigs)):
    return gigs.get_assignment_history(gig_id, assignee_id, user_id)


# Homes
@router.post("/homes", status_code=201, tags=["homes"])
def create_home(body: HomeIn, user_id: str = Depends(get_current_user_id), homes: HomeService = Depends(get_homes)):
    return homes.create_home(user_id, body)


@router.get("/homes/{home_id}", tags=["homes"])
def read_home(home_id: str, user_id: str = Depends(get_current_user_id), homes: HomeService = Depends(get_homes)):
    return homes.get_home(home_id, user_id)


@router.patch("/homes/{home_id}", tags=["homes"])
def update_home(home_id: str, body: HomeUpdate, user_id: str = Depends(get_current_user_id),
                homes: HomeService = Depends(get_homes)):
    return homes.update_home(home_id, user_id, body)


@router.delete("/homes/{home_id}", tags=["homes"])
def delete_home(home_id: str, user_id: str = Depends(get_current_user_id), homes: HomeService = Depends(get_homes)):
    return homes.delete_home(home_id, user_id)


@router.post("/homes/{home_id}/attach", tags=["homes"])
def attach_occupant(home_id: str, body: OccupantPayload, user_id: str = Depends(get_current_user_id),
                    homes: HomeService = Depends(get_homes)):
    return homes.attach_user(home_id, user_id, body.userId)


@router.post("/homes/{home_id}/detach", tags=["homes"])
def detach_occupant(home_id: str, body: OccupantPayload, user_id: str = Depends(get_current_user_id),
                    homes: HomeService = Depends(get_homes)):
    return homes.detach_user(home_id, user_id, body.userId)


@router.post("/homes/{home_id}/privateData", status_code=201, tags=["homes"])
def add_private_data(home_id: str, body: HomeDataIn, user_id: str = Depends(get_current_user_id),
                     homes: HomeService = Depends(get_homes)):
    return homes.add_data(home_id, user_id, PRIVATE_DATA, body)


@router.get("/homes/{home_id}/privateData", tags=["homes"])
def list_private_data(home_id: str, user_id: str = Depends(get_current_user_id),
                      homes: HomeService = Depends(get_homes)):
    return homes.list_data(home_id, user_id, PRIVATE_DATA)


@router.post("/homes/{home_id}/publicData", status_code=201, tags=["homes"])
def add_public_data(home_id: str, body: HomeDataIn, user_id: str = Depends(get_current_user_id),
                    homes: HomeService = Depends(get_homes)):
    return homes.add_data(home_id, user_id, PUBLIC_DATA, body)


@router.get("/homes/{home_id}/publicData", tags=["homes"])
def list_public_data(home_id: str, user_id: str = Depends(get_current_user_id),
                     homes: HomeService = Depends(get_homes)):
    return homes.list_data(home_id, user_id, PUBLIC_DATA)


# Mailbox
@router.post("/mailbox/ad", tags=["mailbox"])
def send_ad(body: AdIn, user_id: str = Depends(get_current_user_id), inbox: InboxService = Depends(get_inbox)):
    return inbox.send_ad(user_id, body)


@router.get("/mailbox", tags=["mailbox"])
def read_mailbox(user_id: str = Depends(get_current_user_id), inbox: InboxService = Depends(get_inbox)):
    return inbox.list_ads(user_id)


# Chat
@router.websocket("/ws/chat")
async def chat_socket(websocket: WebSocket, token: Optional[str] = None):
    state = websocket.app.state
    try:
        user_id = state.authenticator.authenticate(
            token or Authenticator.bearer_token(websocket.headers.get("authorization"))
        )
    except AuthenticationError as exc:
        logger.info("Chat connection refused: %s", exc.message)
        await websocket.close(code=1008)
        return

    await websocket.accept()
    connection = WebSocketConnection(websocket)
    logger.info("Chat connected: %s", user_id)
    try:
        while True:
            text = await websocket.receive_text()
            try:
                frame = json.loads(text)
            except ValueError:
                await connection.send(ERROR, ValidationError("Frames must be JSON").to_dict())
                continue
            await state.chat.handle_event(connection, user_id, frame)
    except WebSocketDisconnect:
        logger.info("Chat disconnected: %s", user_id)
    finally:
        await state.chat.leave(connection)


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[DocumentStore] = None,
    mailer: Optional[Mailer] = None,
    chat_transport: Optional[ChatTransport] = None,
) -> FastAPI:
    """Build the API with its collaborators constructed once and injected."""
    settings = settings or load_settings()
    setup_logging(settings.log_level)
    store = store or open_store(settings)

    app = FastAPI(title="Oodoo API", version="1.0.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    authenticator = Authenticator(settings)
    identity = IdentityProvider(store)
    app.state.settings = settings
    app.state.store = store
    app.state.authenticator = authenticator
    app.state.gigs = GigService(store)
    app.state.chat = ChatRouter(store, chat_transport)
    app.state.users = UserService(store, identity, authenticator, mailer or Mailer(settings), settings)
    app.state.homes = HomeService(store)
    app.state.inbox = InboxService(store)
    app.state.login_throttle = AttemptThrottle(
        settings.login_max_attempts, settings.login_window_minutes * 60
    )

    app.add_exception_handler(ServiceError, service_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=app.state.settings.port)
