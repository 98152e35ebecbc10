from __future__ import annotations

import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from typing import Callable

from fastapi import Cookie, Depends, FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse, StreamingResponse

from pitchroom import demo, services
from pitchroom.auth import AuthClient, AuthError, IdentityProvider, UserSession, friendly_message
from pitchroom.chat import ChatRegistry
from pitchroom.config import load_settings
from pitchroom.conversations import ConversationList
from pitchroom.db import init_db
from pitchroom.directory import PitchDirectory, publish_pitch
from pitchroom.errors import NotSignedInError, PreconditionError
from pitchroom.interest import InterestResolver
from pitchroom.models import Conversation, Pitch
from pitchroom.schemas import (
    ConversationSelect,
    Credentials,
    InterestOut,
    MessageCreate,
    MessageOut,
    PasswordResetConfirm,
    PasswordResetRequest,
    PitchCreate,
    PitchOut,
    RoleUpdate,
    SessionOut,
)
from pitchroom.session_monitor import PAGES, SessionMonitor
from pitchroom.store import DocumentStore
from pitchroom.utils import read_token

log = logging.getLogger(__name__)

SESSION_COOKIE = "pitchroom_session"
SNAPSHOT_TIMEOUT = 5.0
KEEPALIVE_SECONDS = 15.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = load_settings()
    store = DocumentStore(init_db(settings.database_url))
    app.state.settings = settings
    app.state.store = store
    app.state.identity = IdentityProvider(
        store, settings.jwt_secret,
        token_ttl_minutes=settings.token_ttl_minutes,
        reset_ttl_minutes=settings.reset_ttl_minutes,
        bcrypt_rounds=settings.bcrypt_rounds,
    )
    app.state.local = demo.LocalStore(settings.demo_store_path)
    app.state.chats = ChatRegistry(store)
    yield
    app.state.chats.close_all()
    await store.settle()


app = FastAPI(
    title="Pitchroom",
    version="0.1.0",
    description=(
        "Marketplace API connecting startup founders and investors. "
        "Founders publish pitches, investors search them and express interest, "
        "and every interest opens a live chat between the two."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Auth", "description": "Sign up, sign in, sign out and password resets."},
        {"name": "Pages", "description": "Guarded page views."},
        {"name": "Pitches", "description": "Browse, search and publish pitches; express interest."},
        {"name": "Conversations", "description": "Live list of your conversations."},
        {"name": "Chat", "description": "The active conversation: select, read and send."},
        {"name": "Demo", "description": "Offline demo pitches kept in a local file."},
    ],
)


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError):
    status = {"invalid-credentials": 401, "user-not-found": 404}.get(exc.code, 400)
    return JSONResponse(status_code=status, content={"detail": friendly_message(exc), "code": exc.code})


@app.exception_handler(NotSignedInError)
async def not_signed_in_handler(request: Request, exc: NotSignedInError):
    return JSONResponse(status_code=401, content={"detail": str(exc)})


@app.exception_handler(PreconditionError)
async def precondition_handler(request: Request, exc: PreconditionError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def get_store(request: Request) -> DocumentStore:
    return request.app.state.store


def get_local(request: Request) -> demo.LocalStore:
    return request.app.state.local


def get_auth(
    request: Request,
    pitchroom_session: str | None = Cookie(None),
    authorization: str | None = Header(None),
) -> AuthClient:
    client = AuthClient(request.app.state.identity)
    client.restore(read_token(pitchroom_session, authorization))
    return client


def current_session(auth: AuthClient = Depends(get_auth)) -> UserSession | None:
    return auth.current_session()


def require_session(session: UserSession | None = Depends(current_session)) -> UserSession:
    if session is None:
        raise NotSignedInError()
    return session


def get_chats(request: Request) -> ChatRegistry:
    return request.app.state.chats


def chat_key(
    session: UserSession = Depends(require_session),
    x_pitchroom_client: str | None = Header(None),
) -> tuple[str, str]:
    """One chat per signed-in user and client (browser tab); the header is optional."""
    return (session.uid, (x_pitchroom_client or "").strip())


def _session_body(response: Response, session: UserSession) -> dict:
    response.set_cookie(SESSION_COOKIE, session.token, httponly=True, samesite="lax")
    return {"uid": session.uid, "email": session.email, "token": session.token}


async def _get_or_404(store: DocumentStore, model, doc_id: str, label: str = "Record") -> dict:
    doc = await store.get(model, doc_id)
    if doc is None:
        raise HTTPException(404, f"{label} not found")
    return doc


async def _conversation_snapshot(store: DocumentStore, session: UserSession) -> dict:
    """Render the conversation list once: subscribe, take the first snapshot, cancel."""
    listing = ConversationList(store, session)
    ready = asyncio.Event()
    listing.add_listener(lambda view: ready.set())
    listing.start()
    try:
        await asyncio.wait_for(ready.wait(), timeout=SNAPSHOT_TIMEOUT)
    except TimeoutError:
        log.warning("No conversation snapshot for %s after %.0fs", session.uid, SNAPSHOT_TIMEOUT)
    finally:
        listing.stop()
    return listing.render()


def _view_stream(
    request: Request,
    render: Callable[[], dict],
    listen: Callable[[Callable[[dict], None]], Callable[[], None]],
    on_close: Callable[[], None] | None = None,
):
    """SSE stream of view dicts pushed by a component listener."""
    async def stream():
        queue: asyncio.Queue[dict] = asyncio.Queue()
        remove = listen(queue.put_nowait)
        try:
            yield f"data: {json.dumps(render())}\n\n"
            while not await request.is_disconnected():
                try:
                    view = await asyncio.wait_for(queue.get(), timeout=KEEPALIVE_SECONDS)
                except TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                yield f"data: {json.dumps(view)}\n\n"
        finally:
            remove()
            if on_close is not None:
                on_close()

    return StreamingResponse(stream(), media_type="text/event-stream")


# ---------------------------------------------------------------------------
# Routes: Health
# ---------------------------------------------------------------------------


@app.get("/api/health")
async def health():
    return {"status": "ok"}


# ---------------------------------------------------------------------------
# Routes: Auth
# ---------------------------------------------------------------------------


@app.post("/api/auth/signup", status_code=201, tags=["Auth"], summary="Create an account and sign in")
async def sign_up(body: Credentials, response: Response, auth: AuthClient = Depends(get_auth)):
    session = await auth.sign_up(body.email, body.password)
    return _session_body(response, session)


@app.post("/api/auth/signin", tags=["Auth"], summary="Sign in with email and password")
async def sign_in(body: Credentials, response: Response, auth: AuthClient = Depends(get_auth)):
    session = await auth.sign_in(body.email, body.password)
    return _session_body(response, session)


@app.post("/api/auth/signout", tags=["Auth"], summary="Sign out and drop the live chat")
async def sign_out(request: Request, response: Response, auth: AuthClient = Depends(get_auth)):
    session = auth.current_session()
    if session is not None:
        request.app.state.chats.drop_user(session.uid)
    auth.sign_out()
    response.delete_cookie(SESSION_COOKIE)
    return {"ok": True}


@app.get("/api/auth/session", tags=["Auth"], summary="Current session, if any")
async def get_session_info(session: UserSession | None = Depends(current_session)):
    if session is None:
        return {"session": None}
    return {"session": SessionOut(uid=session.uid, email=session.email)}


@app.post("/api/auth/reset", tags=["Auth"], summary="Send a password reset link")
async def request_reset(body: PasswordResetRequest, auth: AuthClient = Depends(get_auth)):
    await auth.send_password_reset(body.email)
    return {"ok": True}


@app.post("/api/auth/reset/confirm", tags=["Auth"], summary="Set a new password with a reset token")
async def confirm_reset(body: PasswordResetConfirm, auth: AuthClient = Depends(get_auth)):
    await auth.provider.confirm_password_reset(body.token, body.password)
    return {"ok": True}


# ---------------------------------------------------------------------------
# Routes: Pages
# ---------------------------------------------------------------------------


@app.get("/pages/{page}", tags=["Pages"], summary="Guarded page view (redirects when the guard fails)")
async def page_view(
    page: str,
    q: str = Query("", description="Search text for the feed"),
    auth: AuthClient = Depends(get_auth),
    store: DocumentStore = Depends(get_store),
):
    if page not in PAGES:
        raise HTTPException(404, "Page not found")

    async def load_directory(session: UserSession | None) -> dict:
        directory = PitchDirectory(store)
        await directory.load()
        return directory.render(q)

    async def load_conversations(session: UserSession | None) -> dict:
        return await _conversation_snapshot(store, session)

    redirects: list[str] = []
    monitor = SessionMonitor(
        auth, page, navigate=redirects.append,
        initializers={"directory": load_directory, "conversations": load_conversations},
    )
    decision = await monitor.handle(auth.current_session())
    if redirects:
        return RedirectResponse(f"/pages/{redirects[-1]}", status_code=303)
    return {"page": page, "identity": decision.identity, "view": monitor.last_result}


# ---------------------------------------------------------------------------
# Routes: Pitches
# ---------------------------------------------------------------------------


@app.get("/api/pitches", tags=["Pitches"], summary="List pitches newest first, optionally filtered")
async def list_pitches(
    q: str = Query("", description="Case-insensitive text matched against title, founder, sector, location, summary"),
    session: UserSession = Depends(require_session),
    store: DocumentStore = Depends(get_store),
):
    directory = PitchDirectory(store)
    await directory.load()
    return directory.render(q)


@app.post("/api/pitches", response_model=PitchOut, status_code=201, tags=["Pitches"], summary="Publish a pitch")
async def create_pitch(
    body: PitchCreate,
    session: UserSession = Depends(require_session),
    store: DocumentStore = Depends(get_store),
):
    return services.pitch_summary(await publish_pitch(store, session, body))


@app.post("/api/pitches/{pitch_id}/interest", response_model=InterestOut, tags=["Pitches"],
          summary="Express interest: open (or refresh) the conversation with the founder")
async def express_interest(
    pitch_id: str,
    session: UserSession = Depends(require_session),
    store: DocumentStore = Depends(get_store),
):
    pitch = await _get_or_404(store, Pitch, pitch_id, "Pitch")
    result = await InterestResolver(store).express_interest(pitch, session)
    return {"conversation_id": result.conversation["id"], "created": result.created}


# ---------------------------------------------------------------------------
# Routes: Conversations
# ---------------------------------------------------------------------------


@app.get("/api/conversations", tags=["Conversations"], summary="Your conversations, most recent activity first")
async def list_conversations(
    session: UserSession = Depends(require_session),
    store: DocumentStore = Depends(get_store),
):
    return await _conversation_snapshot(store, session)


@app.get("/api/conversations/stream", tags=["Conversations"], summary="Live conversation list (SSE)")
async def stream_conversations(
    request: Request,
    session: UserSession = Depends(require_session),
    store: DocumentStore = Depends(get_store),
):
    listing = ConversationList(store, session)
    response = _view_stream(request, listing.render, listing.add_listener, on_close=listing.stop)
    listing.start()
    return response


# ---------------------------------------------------------------------------
# Routes: Chat
# ---------------------------------------------------------------------------


@app.post("/api/chat/select", tags=["Chat"], summary="Make a conversation the live one")
async def select_conversation(
    body: ConversationSelect,
    session: UserSession = Depends(require_session),
    key: tuple[str, str] = Depends(chat_key),
    chats: ChatRegistry = Depends(get_chats),
    store: DocumentStore = Depends(get_store),
):
    conversation = await _get_or_404(store, Conversation, body.conversation_id, "Conversation")
    if session.uid not in conversation["participants"]:
        raise HTTPException(403, "You are not a participant in this conversation")
    chat = chats.get(key, session)
    chat.open(conversation)
    await store.settle()
    return chat.render()


@app.get("/api/chat", tags=["Chat"], summary="Current chat view")
async def get_chat(
    session: UserSession = Depends(require_session),
    key: tuple[str, str] = Depends(chat_key),
    chats: ChatRegistry = Depends(get_chats),
):
    return chats.get(key, session).render()


@app.post("/api/chat/messages", response_model=MessageOut, status_code=201, tags=["Chat"],
          summary="Send a message to the live conversation")
async def send_message(
    body: MessageCreate,
    session: UserSession = Depends(require_session),
    key: tuple[str, str] = Depends(chat_key),
    chats: ChatRegistry = Depends(get_chats),
    store: DocumentStore = Depends(get_store),
):
    message_id = await chats.get(key, session).send(body.text)
    await store.settle()
    return {"id": message_id}


@app.get("/api/chat/stream", tags=["Chat"], summary="Live view of the active conversation (SSE)")
async def stream_chat(
    request: Request,
    session: UserSession = Depends(require_session),
    key: tuple[str, str] = Depends(chat_key),
    chats: ChatRegistry = Depends(get_chats),
):
    chat = chats.get(key, session)
    return _view_stream(request, chat.render, chat.add_listener, on_close=lambda: chats.release(key))


# ---------------------------------------------------------------------------
# Routes: Demo
# ---------------------------------------------------------------------------


@app.get("/api/demo/pitches", tags=["Demo"], summary="Demo feed (seeds sample pitches when empty)")
async def demo_feed(q: str = Query(""), local: demo.LocalStore = Depends(get_local)):
    return demo.feed(local, q)


@app.post("/api/demo/pitches", status_code=201, tags=["Demo"], summary="Add a pitch to the demo feed")
async def demo_add_pitch(body: PitchCreate, local: demo.LocalStore = Depends(get_local)):
    return services.pitch_summary(demo.add_pitch(local, body))


@app.delete("/api/demo/pitches", tags=["Demo"], summary="Remove every demo pitch")
async def demo_wipe(local: demo.LocalStore = Depends(get_local)):
    demo.wipe(local)
    return {"ok": True}


@app.post("/api/demo/seed", tags=["Demo"], summary="Replace demo pitches with the samples")
async def demo_seed(local: demo.LocalStore = Depends(get_local)):
    return {"seeded": demo.seed(local)}


@app.get("/api/demo/role", tags=["Demo"], summary="Preferred role")
async def demo_get_role(local: demo.LocalStore = Depends(get_local)):
    return {"role": demo.get_role(local)}


@app.put("/api/demo/role", tags=["Demo"], summary="Set preferred role")
async def demo_set_role(body: RoleUpdate, local: demo.LocalStore = Depends(get_local)):
    demo.save_role(local, body.role)
    return {"role": body.role}


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    logging.basicConfig(level=load_settings().log_level)
    uvicorn.run(
        "pitchroom.app:app",
        host=os.environ.get("PITCHROOM_HOST", "127.0.0.1"),
        port=int(os.environ.get("PITCHROOM_PORT", "8001")),
        reload=os.environ.get("PITCHROOM_RELOAD") == "1",
    )


if __name__ == "__main__":
    main()
