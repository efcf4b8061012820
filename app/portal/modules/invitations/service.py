from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.orm import Session
from werkzeug.security import generate_password_hash

from app.portal import errors
from app.portal.audit import record_event
from app.portal.email import send_invitation_email
from app.portal.errors import ApiError, ErrorCode
from app.portal.models import User
from app.portal.modules.companies.models import Company
from app.portal.modules.invitations.models import Invitation

logger = logging.getLogger(__name__)

INVITATION_TTL = timedelta(days=7)


def invitation_url(config: Mapping[str, Any], token: str) -> str:
    return f"{config.get('APP_URL', '')}/auth/accept-invitation?token={token}"


def list_invitations(s: Session, *, status: str | None = None) -> list[Invitation]:
    q = s.query(Invitation)
    if status:
        q = q.filter(Invitation.status == status)
    return q.order_by(Invitation.created_at.desc(), Invitation.id.desc()).all()


def create_invitation(s: Session, inviter: User, payload: dict[str, Any], config: Mapping[str, Any]) -> tuple[Invitation, str]:
    address = payload["email"].strip().lower()

    if s.query(User).filter(User.email == address).one_or_none() is not None:
        raise errors.conflict("A user with this email already exists")
    pending = (
        s.query(Invitation)
        .filter(Invitation.email == address, Invitation.status == "pending")
        .first()
    )
    if pending is not None:
        raise errors.conflict("An invitation for this email is already pending")

    company_id = payload.get("company_id")
    company = None
    if payload["role"] == "client":
        if not company_id:
            raise errors.validation("Company is required for client role")
        company = s.get(Company, company_id)
        if company is None:
            raise errors.not_found("Company")
    elif company_id:
        company = s.get(Company, company_id)
        if company is None:
            raise errors.not_found("Company")

    now = datetime.utcnow()
    inv = Invitation(
        email=address,
        full_name=payload["full_name"],
        role=payload["role"],
        company_id=company.id if company else None,
        token=str(uuid.uuid4()),
        invited_by=inviter.id,
        status="pending",
        expires_at=now + INVITATION_TTL,
        created_at=now,
        updated_at=now,
    )
    s.add(inv)
    s.flush()
    record_event(
        s,
        actor=inviter,
        action="create",
        entity_type="invitation",
        entity_id=inv.id,
        company_id=inv.company_id,
        new_values={"email": inv.email, "role": inv.role},
    )

    url = invitation_url(config, inv.token)
    result = send_invitation_email(
        inv.email,
        inv.full_name,
        url,
        inviter_name=inviter.display_name,
        company_name=company.name if company else None,
        config=config,
    )
    if not result.success:
        logger.warning("invitation email not sent invitation=%s: %s", inv.id, result.error)
    return inv, url


def delete_invitation(s: Session, actor: User, invitation_id: int) -> None:
    inv = s.get(Invitation, invitation_id)
    if inv is None:
        raise errors.not_found("Invitation")
    record_event(
        s,
        actor=actor,
        action="delete",
        entity_type="invitation",
        entity_id=inv.id,
        company_id=inv.company_id,
        old_values={"email": inv.email, "status": inv.status},
    )
    s.delete(inv)


def describe_invitation(s: Session, token: str) -> dict[str, Any]:
    """Public view of an invitation for the accept page."""
    inv = s.query(Invitation).filter(Invitation.token == token).one_or_none()
    if inv is None:
        raise errors.not_found("Invitation")

    brief = {"email": inv.email, "full_name": inv.full_name}
    if inv.status != "pending":
        reason = "already_accepted" if inv.status == "accepted" else "expired"
        return {"valid": False, "reason": reason, "invitation": brief}
    if inv.is_expired():
        return {"valid": False, "reason": "expired", "invitation": brief}

    brief.update(
        {
            "role": inv.role,
            "expires_at": inv.expires_at.isoformat(),
            "company": {"id": inv.company.id, "name": inv.company.name} if inv.company else None,
        }
    )
    return {"valid": True, "invitation": brief}


def accept_invitation(s: Session, token: str, password: str) -> User:
    """
    Create the invited user and mark the invitation accepted.
    An expired invitation is marked expired and committed before the error is raised.
    """
    inv = (
        s.query(Invitation)
        .filter(Invitation.token == token, Invitation.status == "pending")
        .one_or_none()
    )
    if inv is None:
        raise ApiError("Invitation not found or already used", ErrorCode.NOT_FOUND, 404)

    now = datetime.utcnow()
    if inv.is_expired(now):
        inv.status = "expired"
        inv.updated_at = now
        s.commit()
        raise errors.validation("This invitation has expired")

    if s.query(User).filter(User.email == inv.email).one_or_none() is not None:
        raise errors.conflict("A user with this email already exists")

    user = User(
        email=inv.email,
        password_hash=generate_password_hash(password),
        full_name=inv.full_name,
        role=inv.role,
        company_id=inv.company_id,
        is_active=True,
        created_at=now,
        updated_at=now,
    )
    s.add(user)
    s.flush()
    inv.status = "accepted"
    inv.accepted_at = now
    inv.updated_at = now
    record_event(
        s,
        actor=user,
        action="create",
        entity_type="user",
        entity_id=user.id,
        company_id=user.company_id,
        new_values={"email": user.email, "role": user.role},
        summary="Account created from invitation",
    )
    logger.info("invitation accepted invitation=%s user=%s", inv.id, user.id)
    return user
