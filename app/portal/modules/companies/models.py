from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import JSON, Boolean, Date, DateTime, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.portal.models import Base


def _iso(value: date | datetime | None) -> str | None:
    return value.isoformat() if value else None


class Company(Base):
    """
    A tenant: one client organization with a plan tier and an active-request limit.
    WooCommerce-provisioned companies carry woo_customer_id.
    """

    __tablename__ = "companies"
    __table_args__ = (
        Index("idx_companies_status", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")
    plan_tier: Mapped[str] = mapped_column(String(16), nullable=False, default="standard")
    max_active_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    woo_customer_id: Mapped[str | None] = mapped_column(String(64), nullable=True, unique=True)

    # CRM profile
    industry: Mapped[str | None] = mapped_column(String(32), nullable=True)
    business_type: Mapped[str | None] = mapped_column(String(8), nullable=True)
    city: Mapped[str | None] = mapped_column(String(100), nullable=True)
    state: Mapped[str | None] = mapped_column(String(100), nullable=True)
    country: Mapped[str | None] = mapped_column(String(100), nullable=True, default="US")
    website_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    google_business_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    facebook_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    instagram_handle: Mapped[str | None] = mapped_column(String(100), nullable=True)
    linkedin_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    employee_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    annual_revenue_range: Mapped[str | None] = mapped_column(String(16), nullable=True)
    logo_url: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    onboarding_completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    # Plain column (no FK) to avoid a companies <-> contacts cycle; kept in sync by the service layer.
    primary_contact_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    contacts: Mapped[list["Contact"]] = relationship(
        "Contact",
        back_populates="company",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    services: Mapped[list["ClientService"]] = relationship(
        "ClientService",
        back_populates="company",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    CRM_FIELDS = (
        "industry",
        "business_type",
        "city",
        "state",
        "country",
        "website_url",
        "google_business_url",
        "facebook_url",
        "instagram_handle",
        "linkedin_url",
        "phone",
        "employee_count",
        "annual_revenue_range",
        "logo_url",
        "notes",
    )

    def to_dict(self) -> dict:
        out = {
            "id": self.id,
            "name": self.name,
            "status": self.status,
            "plan_tier": self.plan_tier,
            "max_active_limit": self.max_active_limit,
            "woo_customer_id": self.woo_customer_id,
            "primary_contact_id": self.primary_contact_id,
            "onboarding_completed_at": _iso(self.onboarding_completed_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        for key in self.CRM_FIELDS:
            out[key] = getattr(self, key)
        return out

    def to_summary(self) -> dict:
        return {"id": self.id, "name": self.name, "status": self.status, "plan_tier": self.plan_tier}


class Contact(Base):
    __tablename__ = "contacts"
    __table_args__ = (
        Index("idx_contacts_company_id", "company_id"),
        Index("idx_contacts_email", "email"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    role: Mapped[str | None] = mapped_column(String(100), nullable=True)  # e.g. "Owner", "Office Manager"
    is_primary: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_billing_contact: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    company: Mapped["Company"] = relationship("Company", back_populates="contacts")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "role": self.role,
            "is_primary": self.is_primary,
            "is_billing_contact": self.is_billing_contact,
            "is_active": self.is_active,
            "notes": self.notes,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class ClientService(Base):
    """A subscription or one-off engagement sold to a company (source of MRR)."""

    __tablename__ = "client_services"
    __table_args__ = (
        Index("idx_client_services_company_id", "company_id"),
        Index("idx_client_services_status", "status"),
        Index("idx_client_services_woo_subscription_id", "woo_subscription_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id", ondelete="CASCADE"), nullable=False)
    service_name: Mapped[str] = mapped_column(String(255), nullable=False)
    service_type: Mapped[str] = mapped_column(String(16), nullable=False)  # subscription | one_time
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")
    price: Mapped[float | None] = mapped_column(Numeric(10, 2, asdecimal=False), nullable=True)
    billing_cycle: Mapped[str | None] = mapped_column(String(16), nullable=True)
    start_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    renewal_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    woo_product_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    woo_subscription_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    woo_order_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    company: Mapped["Company"] = relationship("Company", back_populates="services")

    def monthly_value(self) -> float:
        """Normalize the price to a per-month amount (0 for one-off work)."""
        price = float(self.price or 0)
        if self.billing_cycle == "quarterly":
            return price / 3
        if self.billing_cycle == "yearly":
            return price / 12
        if self.billing_cycle == "monthly":
            return price
        return 0.0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "service_name": self.service_name,
            "service_type": self.service_type,
            "status": self.status,
            "price": float(self.price) if self.price is not None else None,
            "billing_cycle": self.billing_cycle,
            "start_date": _iso(self.start_date),
            "end_date": _iso(self.end_date),
            "renewal_date": _iso(self.renewal_date),
            "woo_product_id": self.woo_product_id,
            "woo_subscription_id": self.woo_subscription_id,
            "woo_order_id": self.woo_order_id,
            "notes": self.notes,
            "metadata": self.metadata_json or {},
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
