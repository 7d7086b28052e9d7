from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# CRM inputs (written by the sync collaborators, read here)
# ---------------------------------------------------------------------------


class Deal(Base):
    __tablename__ = "deals"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False)
    account_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    name: Mapped[str] = mapped_column(String(300), default="")
    stage_normalized: Mapped[str] = mapped_column(String(50), default="")
    custom_fields_json: Mapped[str] = mapped_column(Text, default="{}")
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    contacts: Mapped[list[DealContact]] = relationship("DealContact", back_populates="deal")


class Contact(Base):
    __tablename__ = "contacts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False)
    account_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    first_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    email: Mapped[str | None] = mapped_column(String(300), nullable=True)
    title: Mapped[str | None] = mapped_column(String(300), nullable=True)
    source_id: Mapped[str | None] = mapped_column(String(64), nullable=True)  # CRM-native id
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p).strip()


class Activity(Base):
    __tablename__ = "activities"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False)
    deal_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    contact_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    activity_type: Mapped[str] = mapped_column(String(30), nullable=False)  # email | call | meeting | ...
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class Conversation(Base):
    __tablename__ = "conversations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False)
    deal_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    title: Mapped[str] = mapped_column(String(300), default="")
    participants_json: Mapped[str] = mapped_column(Text, default="[]")  # [{"email": ..., "name": ...}]
    occurred_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class WorkspaceConfig(Base):
    __tablename__ = "workspace_configs"

    workspace_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    role_field_mappings_json: Mapped[str] = mapped_column(Text, default="{}")
    updated_by: Mapped[str] = mapped_column(String(200), default="")
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())


# ---------------------------------------------------------------------------
# Role assignments (the engine's output)
# ---------------------------------------------------------------------------


class DealContact(Base):
    """One witness for the role a contact plays on a deal.

    Keyed by ``(workspace_id, deal_id, contact_id, source)``; a pair can carry
    one row per source.
    """

    __tablename__ = "deal_contacts"
    __table_args__ = (
        UniqueConstraint("workspace_id", "deal_id", "contact_id", "source", name="uq_deal_contacts_key"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False)
    deal_id: Mapped[str] = mapped_column(String(64), ForeignKey("deals.id"), nullable=False)
    contact_id: Mapped[str] = mapped_column(String(64), ForeignKey("contacts.id"), nullable=False)
    source: Mapped[str] = mapped_column(String(80), nullable=False)
    role: Mapped[str | None] = mapped_column(String(200), nullable=True)  # raw CRM label
    buying_role: Mapped[str | None] = mapped_column(String(50), nullable=True)
    role_source: Mapped[str | None] = mapped_column(String(120), nullable=True)
    role_confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    seniority_verified: Mapped[str | None] = mapped_column(String(50), nullable=True)
    department_verified: Mapped[str | None] = mapped_column(String(50), nullable=True)
    enrichment_status: Mapped[str | None] = mapped_column(String(30), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    deal: Mapped[Deal] = relationship("Deal", back_populates="contacts")
    contact: Mapped[Contact] = relationship("Contact")


Index("ix_deal_contacts_pair", DealContact.workspace_id, DealContact.deal_id, DealContact.contact_id)
Index("ix_deals_workspace_account", Deal.workspace_id, Deal.account_id)
Index("ix_contacts_workspace_email", Contact.workspace_id, Contact.email)
Index("ix_contacts_workspace_account", Contact.workspace_id, Contact.account_id)
Index("ix_activities_pair", Activity.workspace_id, Activity.deal_id, Activity.contact_id)
Index("ix_conversations_deal", Conversation.workspace_id, Conversation.deal_id)
