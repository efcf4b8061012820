"""
Central constants for the portal: enum values, the request status machine and plan limits.
"""
from __future__ import annotations

REQUEST_STATUSES = ("queue", "active", "review", "done")
PRIORITIES = ("low", "normal", "high")
COMPANY_STATUSES = ("active", "paused", "churned")
PLAN_TIERS = ("standard", "pro")
SLA_STATUSES = ("on_track", "at_risk", "breached")

INDUSTRIES = (
    "restaurant", "dental", "medical", "legal", "real_estate", "home_services",
    "automotive", "retail", "fitness", "beauty_spa", "professional_services",
    "construction", "financial_services", "technology", "education", "nonprofit", "other",
)
BUSINESS_TYPES = ("b2b", "b2c", "both")
REVENUE_RANGES = ("under_100k", "100k_500k", "500k_1m", "1m_5m", "5m_10m", "over_10m")

SERVICE_TYPES = ("subscription", "one_time")
SERVICE_STATUSES = ("active", "paused", "cancelled", "completed", "pending")
BILLING_CYCLES = ("monthly", "quarterly", "yearly", "one_time")

NOTIFICATION_TYPES = ("comment", "status_change", "assignment", "mention", "due_date", "sla_breach")
ASSIGNMENT_STATUSES = ("assigned", "in_progress", "completed")
FILE_TYPES = ("image", "video", "document", "archive", "other")

TRIGGER_TYPES = ("status_change", "comment_added", "request_created", "due_date_approaching")
ACTION_TYPES = ("notify", "assign", "change_status", "change_priority", "send_email")

INVITATION_STATUSES = ("pending", "accepted", "expired", "cancelled")

STATUS_LABELS = {
    "queue": "In Queue",
    "active": "Active",
    "review": "In Review",
    "done": "Completed",
}

# Allowed moves on the kanban board. Same-status moves are never valid.
STATUS_TRANSITIONS: dict[str, frozenset[str]] = {
    "queue": frozenset({"active", "done"}),
    "active": frozenset({"review", "queue"}),
    "review": frozenset({"done", "active"}),
    "done": frozenset({"queue"}),
}

# Max concurrently active requests per plan tier.
PLAN_LIMITS = {
    "standard": 1,
    "pro": 2,
}


def is_valid_transition(from_status: str, to_status: str) -> bool:
    return to_status in STATUS_TRANSITIONS.get(from_status, frozenset())


def get_allowed_transitions(status: str) -> list[str]:
    return [s for s in REQUEST_STATUSES if s in STATUS_TRANSITIONS.get(status, frozenset())]


def can_activate(active_count: int, limit: int) -> bool:
    return active_count < limit


def plan_limit(plan_tier: str | None) -> int:
    return PLAN_LIMITS.get(plan_tier or "standard", PLAN_LIMITS["standard"])
