from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import g

from app.portal.errors import company_inactive, forbidden, unauthorized
from app.portal.models import User


def current_user() -> User:
    user: User | None = getattr(g, "current_user", None)
    if not user or not user.is_active:
        raise unauthorized()
    return user


def user_is_admin(user: User | None) -> bool:
    return bool(user and user.is_active and user.is_admin)


def can_access_company(user: User | None, company_id: int | None) -> bool:
    """Admins see every company; clients only their own."""
    if not user or not user.is_active:
        return False
    if user.is_admin:
        return True
    return company_id is not None and user.company_id == company_id


def ensure_company_access(user: User, company_id: int | None) -> None:
    if not can_access_company(user, company_id):
        raise forbidden()


def ensure_active_company(user: User) -> None:
    """Clients can only create work while their company subscription is active."""
    if user.is_admin:
        return
    company = user.company
    if company is None or company.status != "active":
        raise company_inactive()


def require_login(fn: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        current_user()
        return fn(*args, **kwargs)

    return wrapped


def require_admin(fn: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        user = current_user()
        # Authenticated but not staff -> 403
        if not user.is_admin:
            raise forbidden("Admin access required")
        return fn(*args, **kwargs)

    return wrapped
