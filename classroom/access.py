"""
Who may see what.

Everything here is a pure function of the context snapshot (or pieces of it),
so pages don't re-derive role/approval branching on their own.
"""
from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

SIGN_IN_PATH = "/auth"
HOME_PATH = "/"


class GateKind(str, Enum):
    LOADING = "loading"
    REDIRECT = "redirect"
    RENDER = "render"


@dataclass(frozen=True)
class GateDecision:
    kind: GateKind
    location: Optional[str] = None


def gate(is_loading: bool, user: Any, require_auth: bool = True,
         redirect_to: str = SIGN_IN_PATH, home: str = HOME_PATH) -> GateDecision:
    """
    require_auth=True  -> page needs a signed-in user
    require_auth=False -> page is for signed-out users only (the sign-in page)

    While the context is loading nobody gets redirected.
    """
    if is_loading:
        return GateDecision(GateKind.LOADING)
    if require_auth and user is None:
        return GateDecision(GateKind.REDIRECT, redirect_to)
    if not require_auth and user is not None:
        return GateDecision(GateKind.REDIRECT, home)
    return GateDecision(GateKind.RENDER)


class AccessLevel(str, Enum):
    ANONYMOUS = "anonymous"
    PROFILE_UNAVAILABLE = "profile_unavailable"
    PENDING_APPROVAL = "pending_approval"
    REJECTED = "rejected"
    STUDENT = "student"
    PROFESSOR = "professor"
    ADMIN = "admin"


def resolve_access(user: Any, profile: Optional[Dict[str, Any]]) -> AccessLevel:
    if user is None:
        return AccessLevel.ANONYMOUS
    if not profile:
        return AccessLevel.PROFILE_UNAVAILABLE

    status = profile.get("approval_status")
    if status == "pending":
        return AccessLevel.PENDING_APPROVAL
    if status == "rejected":
        return AccessLevel.REJECTED

    role = profile.get("role")
    if role == "admin":
        return AccessLevel.ADMIN
    if role == "professor":
        return AccessLevel.PROFESSOR
    return AccessLevel.STUDENT

#approved members only, anything before that (pending, rejected, no profile) is locked out
def is_member(level: AccessLevel) -> bool:
    return level in (AccessLevel.STUDENT, AccessLevel.PROFESSOR, AccessLevel.ADMIN)

def can_view_chapter(role: Optional[str], status: str) -> bool:
    return status == "published" or role == "admin"

def visible_feedback_statuses(is_admin: bool) -> Optional[tuple[str, ...]]:
    """None means no filter (admins see every status)."""
    if is_admin:
        return None
    return ("reviewed", "resolved")
