"""
Default profile for a fresh account.

Both ways a profile can come into existence go through `default_profile_row`:
the backend creates it inside the signup transaction, and the session context
falls back to inserting it lazily when a signed-in user has none.
"""
from __future__ import annotations


def normalize_email(e: str | None) -> str:
    if not e:
        return ""
    return e.strip().lower()

def is_admin_email(email: str | None, admin_email: str | None) -> bool:
    admin = normalize_email(admin_email)
    return bool(admin) and normalize_email(email) == admin

def default_profile_row(user_id: str, email: str, full_name: str | None, admin_email: str | None) -> dict:
    admin = is_admin_email(email, admin_email)
    return {
        "id": user_id,
        "email": email,
        "full_name": full_name or "",
        "role": "admin" if admin else "student",
        "approval_status": "approved" if admin else "pending",
    }
