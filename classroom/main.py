"""
FastAPI application for the course portal.

Pages are JSON view models: each endpoint tells the front end which screen to
show and with which data. Redirects are plain 303s.

- professor/admin: chapters, office-hour slots, announcements, approvals
- students: sign up, wait for approval, read published chapters, book office
  hours, leave feedback

Every browser gets a cookie that maps to its own auth client + session
context (see auth_client.py). Pages read the context snapshot and branch on it
through access.py; all data goes through the Backend adapter.
"""
from __future__ import annotations
import asyncio
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Literal, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, RedirectResponse, StreamingResponse
from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator

from classroom import config
from classroom.access import (
    AccessLevel, GateKind, gate, is_member, resolve_access, visible_feedback_statuses, can_view_chapter,
)
from classroom.auth_client import SESSION_COOKIE_NAME, BrowserSession, ClientRegistry
from classroom.availability import group_slots_by_day, seats_left, slot_view
from classroom.backend import Backend
from classroom.chapters import FILTERS, chapter_card, filter_chapters, next_order_index, status_message
from classroom.context import ContextSnapshot, SessionContext
from classroom.db import SessionLocal, init_db
from classroom.errors import AuthError, BackendError, NotFoundError, TransientNetworkError
from classroom.realtime import LiveTable, pump
from classroom.timeutil import now_utc_naive, parse_dt_to_utc_naive, utc_z

logger = logging.getLogger(__name__)

app = FastAPI(title="Course Portal")

SESSION_COOKIE = SESSION_COOKIE_NAME


@app.on_event("startup")
async def startup():
    config.configure_logging()

    # tests put their own backend/registry on app.state before starting
    if getattr(app.state, "backend", None) is None:
        init_db()
        app.state.backend = Backend(
            SessionLocal,
            admin_email=config.ADMIN_EMAIL,
            provision_on_signup=config.PROFILE_TRIGGER,
        )
    backend: Backend = app.state.backend

    if getattr(app.state, "clients", None) is None:
        app.state.clients = ClientRegistry(backend, ttl_minutes=config.BROWSER_SESSION_TTL_MINUTES)

    # live chapter list: subscribe first so nothing slips in between load and listen
    feed = LiveTable(sort_key="order_index")
    channel = backend.subscribe_to_table("chapters")
    try:
        feed.load(await backend.query_table("chapters", order_by="order_index"))
    except BackendError as e:
        logger.warning("could not preload chapters, list fills from change events: %s", e)
    app.state.chapters = feed
    app.state.chapter_channel = channel
    app.state.chapter_pump = asyncio.create_task(pump(channel, feed))

@app.on_event("shutdown")
async def shutdown():
    task = getattr(app.state, "chapter_pump", None)
    if task:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
    channel = getattr(app.state, "chapter_channel", None)
    if channel:
        channel.close()
    clients = getattr(app.state, "clients", None)
    if clients:
        clients.close()


@app.middleware("http")
async def browser_session(request: Request, call_next):
    clients: ClientRegistry = request.app.state.clients
    cookie = request.cookies.get(SESSION_COOKIE)
    entry = clients.get(cookie)
    known = entry is not None
    if not known:
        entry = clients.build()
    request.state.browser = entry

    response = await call_next(request)

    if known:
        return response
    if entry.client.session is None:
        # nobody signed in, nothing worth remembering
        entry.context.close()
        return response

    clients.add(entry)
    response.set_cookie(
        key=SESSION_COOKIE,
        value=entry.id,
        httponly=True,
        samesite="lax",
        secure=False,  # MUST stay False on HTTP
        max_age=config.BROWSER_SESSION_TTL_MINUTES * 60,
        path="/",
    )
    return response


@app.exception_handler(NotFoundError)
async def not_found(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": "Not found"})

@app.exception_handler(TransientNetworkError)
async def backend_unavailable(request: Request, exc: TransientNetworkError):
    logger.warning("%s %s failed: %s (%s)", request.method, request.url.path, exc, exc.code)
    return JSONResponse(
        status_code=503,
        content={"detail": "The course service is unreachable right now. Please try again.", "retry": True},
    )


#######################------------------Plumbing------------------#######################

def get_backend(request: Request) -> Backend:
    return request.app.state.backend

def get_browser(request: Request) -> BrowserSession:
    return request.state.browser

async def current_context(browser: BrowserSession = Depends(get_browser)) -> SessionContext:
    await browser.context.start()
    # an expired access token gets refreshed here, which re-runs the profile pipeline
    await browser.client.get_session()
    # approvals and role changes made by an admin since the last request
    browser.context.apply_profile_changes()
    return browser.context

def loading_view() -> JSONResponse:
    return JSONResponse({"loading": True, "message": "Loading..."})

def gated(snap: ContextSnapshot, require_auth: bool = True) -> Optional[JSONResponse | RedirectResponse]:
    """None means go ahead and render."""
    decision = gate(snap.is_loading, snap.user, require_auth=require_auth)
    if decision.kind is GateKind.LOADING:
        return loading_view()
    if decision.kind is GateKind.REDIRECT:
        return RedirectResponse(decision.location, status_code=303)
    return None

#for actions (not pages): no redirects, just status codes
def signed_in(ctx: SessionContext = Depends(current_context)) -> ContextSnapshot:
    snap = ctx.snapshot
    if snap.is_loading:
        raise HTTPException(status_code=409, detail="Session is still loading, retry")
    if snap.user is None:
        raise HTTPException(status_code=401, detail="Not signed in")
    return snap

def admin_only(snap: ContextSnapshot = Depends(signed_in)) -> ContextSnapshot:
    if not snap.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return snap

def approved_member(snap: ContextSnapshot = Depends(signed_in)) -> ContextSnapshot:
    level = resolve_access(snap.user, snap.profile)
    if not is_member(level):
        raise HTTPException(status_code=403, detail=f"Account not approved ({level.value})")
    return snap

async def load_panel(coro, what: str, fallback: Any = None) -> tuple[Any, Optional[str]]:
    """Secondary data on a page: on failure show an empty panel (or `fallback`) with a message, never fail the page."""
    try:
        return await coro, None
    except TransientNetworkError as e:
        logger.warning("loading %s failed: %s", what, e)
        return ([] if fallback is None else fallback), f"Could not load {what}. Please try again."

async def names_for(backend: Backend, user_ids) -> Dict[str, str]:
    ids = sorted({u for u in user_ids if u})
    if not ids:
        return {}
    rows = await backend.query_table("profiles", {"id__in": ids})
    return {r["id"]: r.get("full_name") or "" for r in rows}


#######################------------------Request models------------------#######################

def _blank_to_none(v):
    if isinstance(v, str):
        v = v.strip()
        return v or None
    return v

def _required_text(v: Optional[str]) -> str:
    v = (v or "").strip()
    if not v:
        raise ValueError("must not be empty")
    return v

class SignUpRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=6)
    full_name: str

    @field_validator("full_name")
    @classmethod
    def full_name_required(cls, v: str) -> str:
        return _required_text(v)

class SignInRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1)

class ProfileUpdate(BaseModel):
    full_name: Optional[str] = None
    bio: Optional[str] = None

    @field_validator("full_name", "bio", mode="before")
    @classmethod
    def strip_blank(cls, v):
        return _blank_to_none(v)

ChapterStatus = Literal["draft", "scheduled", "published", "archived"]

class ChapterCreate(BaseModel):
    title: str
    description: Optional[str] = None
    content: Optional[str] = None
    duration: Optional[int] = Field(default=None, ge=1)
    status: ChapterStatus = "draft"
    release_date: Optional[datetime] = None

    @field_validator("title")
    @classmethod
    def title_required(cls, v: str) -> str:
        return _required_text(v)

    @field_validator("description", "content", mode="before")
    @classmethod
    def strip_blank(cls, v):
        return _blank_to_none(v)

class ChapterUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    content: Optional[str] = None
    duration: Optional[int] = Field(default=None, ge=1)
    order_index: Optional[int] = Field(default=None, ge=0)
    status: Optional[ChapterStatus] = None
    release_date: Optional[datetime] = None

    @field_validator("title")
    @classmethod
    def title_not_blank(cls, v):
        return None if v is None else _required_text(v)

class SlotCreate(BaseModel):
    title: str = "Office Hours"
    description: Optional[str] = None
    slot_type: str = "office_hours"
    start_time: datetime
    end_time: datetime
    location: Optional[str] = None
    virtual_link: Optional[str] = None
    max_bookings: int = Field(default=1, ge=1, le=500)

    @field_validator("description", "location", "virtual_link", mode="before")
    @classmethod
    def strip_blank(cls, v):
        return _blank_to_none(v)

    @model_validator(mode="after")
    def check_window(self):
        if parse_dt_to_utc_naive(self.end_time) <= parse_dt_to_utc_naive(self.start_time):
            raise ValueError("end_time must be after start_time")
        return self

class BookingCreate(BaseModel):
    booking_reason: Optional[str] = None

    @field_validator("booking_reason", mode="before")
    @classmethod
    def strip_blank(cls, v):
        return _blank_to_none(v)

AnnouncementType = Literal["announcement", "event", "deadline", "update"]
ImportanceLevel = Literal["low", "normal", "high", "urgent"]

class AnnouncementCreate(BaseModel):
    title: str
    content: str
    is_published: bool = True
    is_pinned: bool = False
    announcement_type: AnnouncementType = "announcement"
    importance_level: ImportanceLevel = "normal"
    event_date: Optional[str] = None
    event_time: Optional[str] = None
    location: Optional[str] = None

    @field_validator("title", "content")
    @classmethod
    def text_required(cls, v: str) -> str:
        return _required_text(v)

    @field_validator("event_date", "event_time", "location", mode="before")
    @classmethod
    def strip_blank(cls, v):
        return _blank_to_none(v)

    @model_validator(mode="after")
    def event_needs_date(self):
        if self.announcement_type == "event" and not self.event_date:
            raise ValueError("events need an event_date")
        return self

class AnnouncementUpdate(BaseModel):
    title: Optional[str] = None
    content: Optional[str] = None
    is_published: Optional[bool] = None
    is_pinned: Optional[bool] = None
    announcement_type: Optional[AnnouncementType] = None
    importance_level: Optional[ImportanceLevel] = None
    event_date: Optional[str] = None
    event_time: Optional[str] = None
    location: Optional[str] = None

    @field_validator("title", "content")
    @classmethod
    def text_not_blank(cls, v):
        return None if v is None else _required_text(v)

    @field_validator("event_date", "event_time", "location", mode="before")
    @classmethod
    def strip_blank(cls, v):
        return _blank_to_none(v)

class FeedbackCreate(BaseModel):
    type: Literal["course_content", "technical_issue", "suggestion", "general"]
    subject: str
    message: str
    rating: Optional[int] = Field(default=None, ge=1, le=5)
    is_anonymous: bool = True

    @field_validator("subject", "message")
    @classmethod
    def text_required(cls, v: str) -> str:
        return _required_text(v)

class FeedbackStatusUpdate(BaseModel):
    status: Literal["pending", "reviewed", "resolved", "rejected"]

class ApprovalUpdate(BaseModel):
    status: Literal["approved", "rejected"]

class RoleUpdate(BaseModel):
    role: Literal["student", "professor", "admin"]


#######################------------------Views------------------#######################

def nav_items(snap: ContextSnapshot) -> List[dict]:
    items = [
        {"href": "/", "label": "Home"},
        {"href": "/chapters", "label": "Chapters"},
        {"href": "/availability", "label": "Availability"},
        {"href": "/feedback", "label": "Feedback"},
    ]
    if snap.user is None:
        items.append({"href": "/auth", "label": "Sign In"})
        return items
    items.append({"href": "/profile", "label": "Profile"})
    if snap.is_admin:
        items.append({"href": "/admin", "label": "Admin"})
    return items

def profile_view(p: Dict[str, Any]) -> dict:
    return {
        "id": p["id"],
        "email": p["email"],
        "full_name": p.get("full_name"),
        "role": p.get("role"),
        "approval_status": p.get("approval_status"),
        "student_id": p.get("student_id"),
        "bio": p.get("bio"),
        "created_at": utc_z(p.get("created_at")),
    }

def chapter_detail(ch: Dict[str, Any]) -> dict:
    return {
        "id": ch["id"],
        "title": ch["title"],
        "description": ch.get("description"),
        "content": ch.get("content"),
        "duration": ch.get("duration"),
        "order_index": ch["order_index"],
        "status": ch["status"],
        "release_date": utc_z(ch.get("release_date")),
        "created_at": utc_z(ch.get("created_at")),
        "updated_at": utc_z(ch.get("updated_at")),
    }

def announcement_view(a: Dict[str, Any], author_name: Optional[str] = None) -> dict:
    return {
        "id": a["id"],
        "title": a["title"],
        "content": a["content"],
        "author": author_name,
        "is_published": a.get("is_published"),
        "is_pinned": a.get("is_pinned"),
        "announcement_type": a.get("announcement_type") or "announcement",
        "importance_level": a.get("importance_level") or "normal",
        "event_date": a.get("event_date"),
        "event_time": a.get("event_time"),
        "location": a.get("location"),
        "published_at": utc_z(a.get("published_at")),
        "created_at": utc_z(a.get("created_at")),
    }

def feedback_view(f: Dict[str, Any], names: Dict[str, str]) -> dict:
    if f.get("is_anonymous") or not f.get("user_id"):
        author = "Anonymous"
    else:
        author = names.get(f["user_id"]) or "Student"
    return {
        "id": f["id"],
        "type": f["type"],
        "subject": f["subject"],
        "message": f["message"],
        "rating": f.get("rating"),
        "author": author,
        "status": f["status"],
        "created_at": utc_z(f.get("created_at")),
    }

def student_stats(students: List[Dict[str, Any]], now: datetime) -> dict:
    week_ago = now - timedelta(days=7)
    month_ago = now - timedelta(days=30)
    return {
        "total_students": len(students),
        "new_this_week": sum(1 for s in students if s["created_at"] >= week_ago),
        "new_this_month": sum(1 for s in students if s["created_at"] >= month_ago),
        "recent_students": [
            {"id": s["id"], "full_name": s.get("full_name"), "email": s["email"], "created_at": utc_z(s["created_at"])}
            for s in students[:5]
        ],
    }


#######################------------------Session------------------#######################

@app.get("/")
def home(ctx: SessionContext = Depends(current_context)):
    snap = ctx.snapshot
    return {
        "page": "home",
        "loading": snap.is_loading,
        "signed_in": snap.user is not None,
        "email": snap.user.email if snap.user else None,
        "nav": nav_items(snap),
    }

@app.get("/me")
def me(ctx: SessionContext = Depends(current_context)):
    snap = ctx.snapshot
    return {
        "user": {"id": snap.user.id, "email": snap.user.email} if snap.user else None,
        "profile": profile_view(snap.profile) if snap.profile else None,
        "is_loading": snap.is_loading,
        "is_admin": snap.is_admin,
        "access": resolve_access(snap.user, snap.profile).value,
    }

@app.get("/auth")
def auth_page(ctx: SessionContext = Depends(current_context)):
    blocked = gated(ctx.snapshot, require_auth=False)
    if blocked:
        return blocked
    return {
        "page": "auth",
        "forms": ["signin", "signup"],
        "note": "Students: create an account, an admin will approve your access to the course materials.",
    }

@app.post("/auth/signup")
async def sign_up(
    req: SignUpRequest,
    browser: BrowserSession = Depends(get_browser),
    ctx: SessionContext = Depends(current_context),
):
    try:
        await browser.client.sign_up(req.email, req.password, {"full_name": req.full_name})
    except AuthError as e:
        if e.code == "user_already_exists":
            raise HTTPException(status_code=409, detail="This email is already registered. Try signing in instead.")
        raise HTTPException(status_code=400, detail=str(e))
    await ctx.settle()

    snap = ctx.snapshot
    level = resolve_access(snap.user, snap.profile)
    if level is AccessLevel.ADMIN:
        message = "Account created successfully!"
        redirect = "/admin"
    else:
        message = (
            "Account created successfully! Your account is pending admin approval. "
            "You'll be able to access the course once approved."
        )
        redirect = "/profile"
    return {
        "ok": True,
        "message": message,
        "access": level.value,
        "redirect": redirect,
    }

@app.post("/auth/signin")
async def sign_in(
    req: SignInRequest,
    browser: BrowserSession = Depends(get_browser),
    ctx: SessionContext = Depends(current_context),
):
    try:
        await browser.client.sign_in(req.email, req.password)
    except AuthError:
        raise HTTPException(status_code=401, detail="Invalid login credentials")
    await ctx.settle()

    snap = ctx.snapshot
    return {
        "ok": True,
        "message": "Signed in successfully! Redirecting...",
        "access": resolve_access(snap.user, snap.profile).value,
        "redirect": "/admin" if snap.is_admin else "/",
    }

@app.post("/auth/signout")
async def sign_out(browser: BrowserSession = Depends(get_browser), ctx: SessionContext = Depends(current_context)):
    await browser.client.sign_out()
    await ctx.settle()
    return RedirectResponse("/", status_code=303)


#######################------------------Profile------------------#######################

@app.get("/profile")
async def profile_page(ctx: SessionContext = Depends(current_context), backend: Backend = Depends(get_backend)):
    snap = ctx.snapshot
    blocked = gated(snap)
    if blocked:
        return blocked

    level = resolve_access(snap.user, snap.profile)

    if level is AccessLevel.PROFILE_UNAVAILABLE:
        return {
            "page": "profile",
            "screen": "profile_unavailable",
            "message": "We couldn't load your profile right now.",
            "actions": ["retry", "sign_out"],
        }

    name = snap.profile.get("full_name") or ""
    if level is AccessLevel.PENDING_APPROVAL:
        return {
            "page": "profile",
            "screen": "pending_approval",
            "message": (
                f"Welcome {name}! Your account has been created successfully, but it needs to be "
                "approved by an administrator before you can access the course materials."
            ),
            "actions": ["sign_out"],
        }
    if level is AccessLevel.REJECTED:
        return {
            "page": "profile",
            "screen": "access_denied",
            "message": (
                "Unfortunately, your request to access the course has been declined. If you believe this "
                "is an error, please contact the course administrator."
            ),
            "actions": ["sign_out"],
        }

    total, error = await load_panel(backend.count("chapters", {"status": "published"}), "chapters", fallback=0)
    actions = ["browse_chapters", "availability", "feedback", "edit_profile", "sign_out"]
    if level is AccessLevel.ADMIN:
        actions.insert(0, "admin")
    return {
        "page": "profile",
        "screen": "dashboard",
        "greeting": f"Welcome back, {name or 'Student'}!",
        "profile": profile_view(snap.profile),
        "joined": utc_z(snap.user.created_at),
        "stats": {
            "total_chapters": total,
            "summary": (
                f"{total} chapter{'s' if total != 1 else ''} ready to explore"
                if total else "Course chapters will be available soon"
            ),
        },
        "stats_error": error,
        "actions": actions,
    }

@app.post("/profile/retry")
async def profile_retry(ctx: SessionContext = Depends(current_context)):
    await ctx.reload()
    snap = ctx.snapshot
    return {"ok": snap.profile is not None, "access": resolve_access(snap.user, snap.profile).value}

@app.patch("/profile")
async def update_profile(
    req: ProfileUpdate,
    snap: ContextSnapshot = Depends(signed_in),
    ctx: SessionContext = Depends(current_context),
    backend: Backend = Depends(get_backend),
):
    patch = req.model_dump(exclude_unset=True)
    if not patch:
        raise HTTPException(status_code=400, detail="Nothing to update")
    rows = await backend.update("profiles", patch, {"id": snap.user.id})
    if not rows:
        raise HTTPException(status_code=404, detail="Profile not found")
    await ctx.reload()
    return {"ok": True, "profile": profile_view(rows[0])}


#######################------------------Chapters------------------#######################

@app.get("/chapters")
async def list_chapters(request: Request, filter: str = "all", ctx: SessionContext = Depends(current_context)):
    snap = ctx.snapshot
    if snap.is_loading:
        return loading_view()

    flt = filter if filter in FILTERS else "all"
    feed: LiveTable = request.app.state.chapters
    cards = [chapter_card(ch, snap.role) for ch in filter_chapters(feed.rows(), flt)]

    empty = None
    if not cards:
        empty = "No chapters have been published yet." if flt == "all" else f'No chapters match the "{flt}" filter.'
    return {"page": "chapters", "filter": flt, "filters": list(FILTERS), "chapters": cards, "empty_message": empty}

@app.get("/chapters/{chapter_id}")
async def chapter_page(chapter_id: int, ctx: SessionContext = Depends(current_context), backend: Backend = Depends(get_backend)):
    snap = ctx.snapshot
    if snap.is_loading:
        return loading_view()

    try:
        chapter = await backend.select_one("chapters", {"id": chapter_id})
    except NotFoundError:
        return JSONResponse(
            status_code=404,
            content={"page": "chapter", "screen": "not_found", "message": "Chapter not found", "back": "/chapters"},
        )

    if not can_view_chapter(snap.role, chapter["status"]):
        return RedirectResponse("/chapters", status_code=303)

    preview = chapter["status"] != "published"
    actions = ["start", "take_notes", "ask_question", "mark_complete"]
    if snap.is_admin:
        actions.append("edit")
    return {
        "page": "chapter",
        "screen": "content",
        "chapter": chapter_detail(chapter),
        "preview_mode": preview,
        "status_message": status_message(chapter) if preview else None,
        "actions": actions,
        "back": "/chapters",
    }

@app.get("/events/chapters")
async def chapter_events(snap: ContextSnapshot = Depends(admin_only), backend: Backend = Depends(get_backend)):
    channel = backend.subscribe_to_table("chapters")

    async def event_generator():
        try:
            async for event in channel:
                yield f"data: {json.dumps(jsonable_encoder(event.as_dict()))}\n\n"
        finally:
            channel.close()

    return StreamingResponse(event_generator(), media_type="text/event-stream")


#######################------------------Availability------------------#######################

@app.get("/availability")
async def availability_page(ctx: SessionContext = Depends(current_context), backend: Backend = Depends(get_backend)):
    snap = ctx.snapshot
    now = now_utc_naive()

    # only future slots
    slots, slots_error = await load_panel(
        backend.query_table("availability_slots", {"start_time__gte": now, "is_active": True}, order_by="start_time"),
        "availability",
    )
    bookings: List[Dict[str, Any]] = []
    if slots:
        bookings, booking_error = await load_panel(
            backend.query_table("bookings", {"availability_slot_id__in": [s["id"] for s in slots]}),
            "bookings",
        )
        slots_error = slots_error or booking_error
    by_slot: Dict[int, List[Dict[str, Any]]] = {}
    for b in bookings:
        by_slot.setdefault(b["availability_slot_id"], []).append(b)

    announcements, announcements_error = await load_panel(
        backend.query_table("announcements", {"is_published": True}, order_by="-created_at", limit=5),
        "announcements",
    )
    names: Dict[str, str] = {}
    if announcements:
        try:
            names = await names_for(backend, [a.get("author_id") for a in announcements])
        except TransientNetworkError as e:
            logger.warning("author lookup failed: %s", e)

    level = resolve_access(snap.user, snap.profile)
    return {
        "page": "availability",
        "loading": snap.is_loading,
        "days": group_slots_by_day(slots, by_slot, now),
        "slots_error": slots_error,
        "can_book": is_member(level),
        "announcements": [announcement_view(a, names.get(a.get("author_id") or "")) for a in announcements],
        "announcements_error": announcements_error,
    }

@app.post("/availability/{slot_id}/bookings", status_code=201)
async def book_slot(
    slot_id: int,
    req: BookingCreate,
    snap: ContextSnapshot = Depends(approved_member),
    backend: Backend = Depends(get_backend),
):
    try:
        slot = await backend.select_one("availability_slots", {"id": slot_id})
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Slot not found")

    now = now_utc_naive()
    if not slot.get("is_active") or slot["start_time"] <= now:
        raise HTTPException(status_code=409, detail="This slot is no longer open for booking")

    bookings = await backend.query_table("bookings", {"availability_slot_id": slot_id})
    mine = [b for b in bookings if b["student_id"] == snap.user.id and b["status"] != "cancelled"]
    if mine:
        raise HTTPException(status_code=409, detail="You already booked this slot")
    if seats_left(slot, bookings) <= 0:
        raise HTTPException(status_code=409, detail="This slot is fully booked")

    booking = (await backend.insert("bookings", [{
        "availability_slot_id": slot_id,
        "student_id": snap.user.id,
        "booking_reason": req.booking_reason,
        "status": "confirmed",
    }]))[0]
    return {
        "ok": True,
        "booking_id": booking["id"],
        "status": booking["status"],
        "slot": slot_view(slot, bookings + [booking], now),
    }


#######################------------------Feedback------------------#######################

@app.get("/feedback")
async def feedback_page(ctx: SessionContext = Depends(current_context), backend: Backend = Depends(get_backend)):
    snap = ctx.snapshot
    statuses = visible_feedback_statuses(snap.is_admin)
    filters = {"status__in": statuses} if statuses else {}

    rows, error = await load_panel(
        backend.query_table("feedback", filters, order_by="-created_at", limit=20),
        "feedback",
    )
    names: Dict[str, str] = {}
    named = [r.get("user_id") for r in rows if not r.get("is_anonymous")]
    if named:
        try:
            names = await names_for(backend, named)
        except TransientNetworkError as e:
            logger.warning("author lookup failed: %s", e)

    return {
        "page": "feedback",
        "loading": snap.is_loading,
        "recent_feedback": [feedback_view(r, names) for r in rows],
        "error": error,
        "can_submit": snap.user is not None,
        "can_moderate": snap.is_admin,
    }

@app.post("/feedback", status_code=201)
async def submit_feedback(
    req: FeedbackCreate,
    snap: ContextSnapshot = Depends(signed_in),
    backend: Backend = Depends(get_backend),
):
    row = req.model_dump()
    row.update({"user_id": snap.user.id, "status": "pending"})
    saved = (await backend.insert("feedback", [row]))[0]
    return {"ok": True, "message": "Thank you for your feedback!", "feedback_id": saved["id"], "status": saved["status"]}


#######################------------------Admin------------------#######################

@app.get("/admin")
async def admin_page(
    request: Request,
    ctx: SessionContext = Depends(current_context),
    backend: Backend = Depends(get_backend),
):
    snap = ctx.snapshot
    blocked = gated(snap)
    if blocked:
        return blocked
    if not snap.is_admin:
        return JSONResponse(
            status_code=403,
            content={"page": "admin", "screen": "access_denied", "message": "You need admin access to view this page."},
        )

    uid = snap.user.id
    now = now_utc_naive()

    slots, slots_error = await load_panel(
        backend.query_table("availability_slots", {"professor_id": uid, "is_active": True}, order_by="start_time"),
        "availability slots",
    )
    announcements, announcements_error = await load_panel(
        backend.query_table("announcements", {"author_id": uid}, order_by="-created_at"),
        "announcements",
    )
    students, students_error = await load_panel(
        backend.query_table("profiles", {"role": "student"}, order_by="-created_at"),
        "students",
    )
    pending, pending_error = await load_panel(
        backend.query_table("profiles", {"approval_status": "pending"}, order_by="created_at"),
        "pending approvals",
    )
    open_feedback, feedback_error = await load_panel(
        backend.count("feedback", {"status": "pending"}),
        "feedback",
        fallback=0,
    )

    feed: LiveTable = request.app.state.chapters
    chapters = feed.rows()

    return {
        "page": "admin",
        "screen": "dashboard",
        "stats": {
            "total_students": len(students),
            "published_chapters": sum(1 for ch in chapters if ch["status"] == "published"),
            "pending_feedback": open_feedback,
            "pending_approvals": len(pending),
        },
        "student_stats": student_stats(students, now),
        "availability_slots": [slot_view(s, [], now) for s in slots],
        "recent_announcements": [announcement_view(a, snap.profile.get("full_name")) for a in announcements],
        "pending_approvals": [profile_view(p) for p in pending],
        "chapters": [chapter_detail(ch) for ch in chapters],
        "errors": {
            k: v for k, v in {
                "availability_slots": slots_error,
                "recent_announcements": announcements_error,
                "students": students_error,
                "pending_approvals": pending_error,
                "feedback": feedback_error,
            }.items() if v
        },
    }

# ---- chapters ----

@app.post("/admin/chapters", status_code=201)
async def create_chapter(
    req: ChapterCreate,
    request: Request,
    snap: ContextSnapshot = Depends(admin_only),
    backend: Backend = Depends(get_backend),
):
    feed: LiveTable = request.app.state.chapters
    row = req.model_dump()
    row["release_date"] = parse_dt_to_utc_naive(row["release_date"])
    row["order_index"] = next_order_index(feed.rows())
    row["created_by"] = snap.user.id

    chapter = (await backend.insert("chapters", [row]))[0]
    # show it right away, the realtime echo merges into the same entry
    feed.apply_local(chapter)
    return {"ok": True, "chapter": chapter_detail(chapter)}

@app.patch("/admin/chapters/{chapter_id}")
async def update_chapter(
    chapter_id: int,
    req: ChapterUpdate,
    request: Request,
    snap: ContextSnapshot = Depends(admin_only),
    backend: Backend = Depends(get_backend),
):
    patch = req.model_dump(exclude_unset=True)
    if not patch:
        raise HTTPException(status_code=400, detail="Nothing to update")
    if "release_date" in patch:
        patch["release_date"] = parse_dt_to_utc_naive(patch["release_date"])

    rows = await backend.update("chapters", patch, {"id": chapter_id})
    if not rows:
        raise HTTPException(status_code=404, detail="Chapter not found")
    request.app.state.chapters.apply_local(rows[0])
    return {"ok": True, "chapter": chapter_detail(rows[0])}

@app.delete("/admin/chapters/{chapter_id}")
async def delete_chapter(
    chapter_id: int,
    request: Request,
    snap: ContextSnapshot = Depends(admin_only),
    backend: Backend = Depends(get_backend),
):
    rows = await backend.delete("chapters", {"id": chapter_id})
    if not rows:
        raise HTTPException(status_code=404, detail="Chapter not found")
    request.app.state.chapters.remove_local(chapter_id)
    return {"ok": True, "chapter_id": chapter_id}

# ---- availability ----

@app.post("/admin/availability", status_code=201)
async def create_slot(
    req: SlotCreate,
    snap: ContextSnapshot = Depends(admin_only),
    backend: Backend = Depends(get_backend),
):
    row = req.model_dump()
    row["start_time"] = parse_dt_to_utc_naive(row["start_time"])
    row["end_time"] = parse_dt_to_utc_naive(row["end_time"])
    row.update({"professor_id": snap.user.id, "is_active": True, "is_recurring": False})

    slot = (await backend.insert("availability_slots", [row]))[0]
    return {"ok": True, "slot": slot_view(slot, [], now_utc_naive())}

@app.delete("/admin/availability/{slot_id}")
async def deactivate_slot(
    slot_id: int,
    snap: ContextSnapshot = Depends(admin_only),
    backend: Backend = Depends(get_backend),
):
    rows = await backend.update("availability_slots", {"is_active": False}, {"id": slot_id, "professor_id": snap.user.id})
    if not rows:
        raise HTTPException(status_code=404, detail="Slot not found")
    return {"ok": True, "slot_id": slot_id}

# ---- announcements ----

@app.post("/admin/announcements", status_code=201)
async def create_announcement(
    req: AnnouncementCreate,
    snap: ContextSnapshot = Depends(admin_only),
    backend: Backend = Depends(get_backend),
):
    row = req.model_dump()
    row["author_id"] = snap.user.id
    row["published_at"] = now_utc_naive() if req.is_published else None

    saved = (await backend.insert("announcements", [row]))[0]
    return {"ok": True, "message": "Announcement created successfully!", "announcement": announcement_view(saved)}

@app.patch("/admin/announcements/{announcement_id}")
async def update_announcement(
    announcement_id: int,
    req: AnnouncementUpdate,
    snap: ContextSnapshot = Depends(admin_only),
    backend: Backend = Depends(get_backend),
):
    patch = req.model_dump(exclude_unset=True)
    if not patch:
        raise HTTPException(status_code=400, detail="Nothing to update")

    try:
        current = await backend.select_one("announcements", {"id": announcement_id, "author_id": snap.user.id})
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Announcement not found")

    kind = patch.get("announcement_type", current.get("announcement_type"))
    date = patch["event_date"] if "event_date" in patch else current.get("event_date")
    if kind == "event" and not date:
        raise HTTPException(status_code=422, detail="events need an event_date")
    if patch.get("is_published") and not current.get("is_published"):
        patch["published_at"] = now_utc_naive()

    rows = await backend.update("announcements", patch, {"id": announcement_id, "author_id": snap.user.id})
    if not rows:
        raise HTTPException(status_code=404, detail="Announcement not found")
    return {"ok": True, "message": "Announcement updated successfully!", "announcement": announcement_view(rows[0])}

@app.delete("/admin/announcements/{announcement_id}")
async def delete_announcement(
    announcement_id: int,
    snap: ContextSnapshot = Depends(admin_only),
    backend: Backend = Depends(get_backend),
):
    rows = await backend.delete("announcements", {"id": announcement_id, "author_id": snap.user.id})
    if not rows:
        raise HTTPException(status_code=404, detail="Announcement not found")
    return {"ok": True, "message": "Announcement deleted successfully!", "announcement_id": announcement_id}

# ---- feedback + people ----

@app.patch("/admin/feedback/{feedback_id}")
async def set_feedback_status(
    feedback_id: int,
    req: FeedbackStatusUpdate,
    snap: ContextSnapshot = Depends(admin_only),
    backend: Backend = Depends(get_backend),
):
    rows = await backend.update("feedback", {"status": req.status}, {"id": feedback_id})
    if not rows:
        raise HTTPException(status_code=404, detail="Feedback not found")
    return {"ok": True, "feedback_id": feedback_id, "status": rows[0]["status"]}

@app.post("/admin/profiles/{profile_id}/approval")
async def set_approval(
    profile_id: str,
    req: ApprovalUpdate,
    snap: ContextSnapshot = Depends(admin_only),
    backend: Backend = Depends(get_backend),
):
    rows = await backend.update("profiles", {"approval_status": req.status}, {"id": profile_id})
    if not rows:
        raise HTTPException(status_code=404, detail="Profile not found")
    logger.info("admin %s set approval of %s to %s", snap.user.id, profile_id, req.status)
    return {"ok": True, "profile": profile_view(rows[0])}

@app.patch("/admin/profiles/{profile_id}/role")
async def set_role(
    profile_id: str,
    req: RoleUpdate,
    snap: ContextSnapshot = Depends(admin_only),
    backend: Backend = Depends(get_backend),
):
    if profile_id == snap.user.id and req.role != "admin":
        raise HTTPException(status_code=400, detail="You can't remove your own admin role")
    rows = await backend.update("profiles", {"role": req.role}, {"id": profile_id})
    if not rows:
        raise HTTPException(status_code=404, detail="Profile not found")
    logger.info("admin %s set role of %s to %s", snap.user.id, profile_id, req.role)
    return {"ok": True, "profile": profile_view(rows[0])}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("classroom.main:app", host="0.0.0.0", port=config.PORT)
