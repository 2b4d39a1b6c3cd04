"""
The data-access seam.

Everything the app needs from "the backend" goes through `Backend`:
- auth: sign_up / sign_in / get_user / refresh_session
- tables: query_table / select_one / insert / update / delete by table name
- realtime: subscribe_to_table, fed by every write made through this object

Rows come back as plain dicts (column -> value), the same shape a hosted
Postgres REST client hands out, so the rest of the app never sees an ORM object.

SQLAlchemy is blocking, so every call runs in FastAPI's thread pool and the
realtime fan-out happens back on the event loop once the commit is done.
"""
from __future__ import annotations
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from fastapi.concurrency import run_in_threadpool
from sqlalchemy import func, inspect, select
from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session as DbSession

from classroom import security
from classroom.errors import AuthError, BackendError, DuplicateKeyError, NotFoundError, TransientNetworkError
from classroom.models import TABLES, AuthUser, Profile
from classroom.provisioning import default_profile_row, normalize_email
from classroom.realtime import EVENT_TYPES, Broadcaster, Channel, ChangeEvent

logger = logging.getLogger(__name__)

Row = Dict[str, Any]


@dataclass(frozen=True)
class User:
    id: str
    email: str
    user_metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class Session:
    access_token: str
    refresh_token: str
    expires_at: datetime  # aware UTC
    user: User

    def expired(self, now: Optional[datetime] = None) -> bool:
        return (now or datetime.now(timezone.utc)) >= self.expires_at


def _to_user(u: AuthUser) -> User:
    return User(id=u.id, email=u.email, user_metadata=dict(u.user_metadata or {}), created_at=u.created_at)

def row_to_dict(obj) -> Row:
    return {attr.key: getattr(obj, attr.key) for attr in inspect(obj).mapper.column_attrs}


def _model(table: str):
    try:
        return TABLES[table]
    except KeyError:
        raise BackendError(f"unknown table: {table}", code="42P01")

def _column(model, name: str):
    if name not in inspect(model).columns:
        raise BackendError(f"unknown column {model.__tablename__}.{name}", code="42703")
    return getattr(model, name)

def _condition(model, key: str, value):
    """Django-style lookups: "status", "start_time__gte", "id__in"."""
    name, _, op = key.partition("__")
    col = _column(model, name)
    op = op or "eq"
    if op == "eq":
        return col.is_(None) if value is None else col == value
    if op == "ne":
        return col.is_not(None) if value is None else col != value
    if op == "gt":
        return col > value
    if op == "gte":
        return col >= value
    if op == "lt":
        return col < value
    if op == "lte":
        return col <= value
    if op == "in":
        return col.in_(list(value))
    raise BackendError(f"unsupported filter operator: {op}", code="42883")

def _where(model, filters: Optional[Dict[str, Any]]):
    return [_condition(model, k, v) for k, v in (filters or {}).items()]

def _ordering(model, order_by: Optional[str | Sequence[str]]):
    if not order_by:
        return []
    names = [order_by] if isinstance(order_by, str) else list(order_by)
    out = []
    for name in names:
        desc = name.startswith("-")
        col = _column(model, name.lstrip("-"))
        out.append(col.desc() if desc else col.asc())
    return out


class Backend:
    def __init__(
        self,
        session_factory: Callable[[], DbSession],
        admin_email: Optional[str] = None,
        provision_on_signup: bool = True,
        broadcaster: Optional[Broadcaster] = None,
    ) -> None:
        self._session_factory = session_factory
        self.admin_email = admin_email
        self.provision_on_signup = provision_on_signup
        self.broadcaster = broadcaster or Broadcaster()

    # ---------------------------------------------------------------- plumbing

    async def _run(self, fn: Callable[[DbSession], Any]) -> Any:
        def work():
            db = self._session_factory()
            try:
                return fn(db)
            except IntegrityError as e:
                db.rollback()
                msg = str(e.orig).lower()
                if "unique" in msg or "duplicate" in msg:
                    raise DuplicateKeyError(str(e.orig)) from e
                raise BackendError(str(e.orig), code="23000") from e
            except DBAPIError as e:
                db.rollback()
                raise TransientNetworkError(str(e.orig)) from e
            except SQLAlchemyError as e:
                db.rollback()
                raise TransientNetworkError(str(e)) from e
            finally:
                db.close()

        return await run_in_threadpool(work)

    def _publish(self, table: str, event_type: str, old: Optional[Row], new: Optional[Row]) -> None:
        self.broadcaster.publish(ChangeEvent(table=table, event_type=event_type, old=old, new=new))

    # -------------------------------------------------------------------- auth

    def _issue_session(self, user: User) -> Session:
        access, expires_at = security.create_access_token(subject=user.id, email=user.email)
        return Session(
            access_token=access,
            refresh_token=security.create_refresh_token(subject=user.id),
            expires_at=expires_at,
            user=user,
        )

    async def sign_up(self, email: str, password: str, metadata: Optional[Dict[str, Any]] = None) -> Session:
        email = normalize_email(email)
        metadata = dict(metadata or {})

        def work(db: DbSession) -> tuple[User, Optional[Row]]:
            existing = db.execute(select(AuthUser).where(AuthUser.email == email)).scalar_one_or_none()
            if existing:
                raise AuthError("User already registered", code="user_already_exists")

            u = AuthUser(
                id=str(uuid.uuid4()),
                email=email,
                password_hash=security.hash_password(password),
                user_metadata=metadata,
            )
            db.add(u)
            profile = None
            if self.provision_on_signup:
                # same transaction as the user row, so there is never a user without a profile
                db.flush()
                profile = Profile(**default_profile_row(u.id, email, metadata.get("full_name"), self.admin_email))
                db.add(profile)
            db.commit()
            db.refresh(u)
            if profile is not None:
                db.refresh(profile)
                return _to_user(u), row_to_dict(profile)
            return _to_user(u), None

        user, profile = await self._run(work)
        logger.info("signed up %s (profile %s)", user.id, "provisioned" if profile else "deferred")
        if profile is not None:
            self._publish("profiles", "INSERT", None, profile)
        return self._issue_session(user)

    async def sign_in(self, email: str, password: str) -> Session:
        email = normalize_email(email)

        def work(db: DbSession) -> User:
            u = db.execute(select(AuthUser).where(AuthUser.email == email)).scalar_one_or_none()
            if not u or not security.verify_password(password, u.password_hash):
                raise AuthError("Invalid login credentials")
            return _to_user(u)

        return self._issue_session(await self._run(work))

    async def get_user(self, access_token: str) -> User:
        try:
            payload = security.decode_token(access_token, "access")
        except ValueError as e:
            raise AuthError(str(e), code="invalid_token") from e
        return await self._load_user(payload.get("sub", ""))

    async def refresh_session(self, refresh_token: str) -> Session:
        try:
            payload = security.decode_token(refresh_token, "refresh")
        except ValueError as e:
            raise AuthError(str(e), code="invalid_refresh_token") from e
        return self._issue_session(await self._load_user(payload.get("sub", "")))

    async def _load_user(self, user_id: str) -> User:
        def work(db: DbSession) -> User:
            u = db.get(AuthUser, user_id)
            if not u:
                raise AuthError("User not found", code="user_not_found")
            return _to_user(u)

        return await self._run(work)

    # ------------------------------------------------------------------ tables

    async def query_table(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[str | Sequence[str]] = None,
        limit: Optional[int] = None,
    ) -> List[Row]:
        model = _model(table)

        def work(db: DbSession) -> List[Row]:
            stmt = select(model).where(*_where(model, filters)).order_by(*_ordering(model, order_by))
            if limit is not None:
                stmt = stmt.limit(limit)
            return [row_to_dict(o) for o in db.execute(stmt).scalars().all()]

        return await self._run(work)

    async def select_one(self, table: str, filters: Dict[str, Any]) -> Row:
        rows = await self.query_table(table, filters, limit=2)
        if not rows:
            raise NotFoundError(f"no {table} row matching {filters}")
        if len(rows) > 1:
            raise BackendError(f"more than one {table} row matching {filters}", code="PGRST116")
        return rows[0]

    async def count(self, table: str, filters: Optional[Dict[str, Any]] = None) -> int:
        model = _model(table)

        def work(db: DbSession) -> int:
            stmt = select(func.count()).select_from(model).where(*_where(model, filters))
            return db.execute(stmt).scalar_one()

        return await self._run(work)

    async def insert(self, table: str, rows: Iterable[Row]) -> List[Row]:
        model = _model(table)
        rows = [dict(r) for r in rows]

        def work(db: DbSession) -> List[Row]:
            objs = []
            for r in rows:
                for name in r:
                    _column(model, name)
                objs.append(model(**r))
            db.add_all(objs)
            db.commit()
            for o in objs:
                db.refresh(o)
            return [row_to_dict(o) for o in objs]

        inserted = await self._run(work)
        for r in inserted:
            self._publish(table, "INSERT", None, r)
        return inserted

    async def update(self, table: str, patch: Row, filters: Dict[str, Any]) -> List[Row]:
        model = _model(table)
        for name in patch:
            _column(model, name)

        def work(db: DbSession) -> List[tuple[Row, Row]]:
            objs = db.execute(select(model).where(*_where(model, filters))).scalars().all()
            before = [row_to_dict(o) for o in objs]
            for o in objs:
                for k, v in patch.items():
                    setattr(o, k, v)
            db.commit()
            for o in objs:
                db.refresh(o)
            return list(zip(before, [row_to_dict(o) for o in objs]))

        pairs = await self._run(work)
        for old, new in pairs:
            self._publish(table, "UPDATE", old, new)
        return [new for _, new in pairs]

    async def delete(self, table: str, filters: Dict[str, Any]) -> List[Row]:
        model = _model(table)
        if not filters:
            raise BackendError("refusing to delete without a filter", code="21000")

        def work(db: DbSession) -> List[Row]:
            objs = db.execute(select(model).where(*_where(model, filters))).scalars().all()
            gone = [row_to_dict(o) for o in objs]
            for o in objs:
                db.delete(o)
            db.commit()
            return gone

        deleted = await self._run(work)
        for r in deleted:
            self._publish(table, "DELETE", r, None)
        return deleted

    # ---------------------------------------------------------------- realtime

    def subscribe_to_table(self, table: str, event_types: Iterable[str] = EVENT_TYPES) -> Channel:
        _model(table)
        return self.broadcaster.subscribe(table, event_types)
