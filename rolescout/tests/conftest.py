from __future__ import annotations

import json
from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from rolescout.models import Activity, Base, Contact, Conversation, Deal, DealContact

WS = "ws-1"
BASE_TIME = datetime(2025, 3, 3, 9, 0)

# ---------------------------------------------------------------------------
# Fixtures: in-memory SQLite database
# ---------------------------------------------------------------------------


@pytest.fixture()
def engine():
    eng = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def session(session_factory):
    sess = session_factory()
    try:
        yield sess
    finally:
        sess.close()


# ---------------------------------------------------------------------------
# CRM data builder
# ---------------------------------------------------------------------------


class Crm:
    """Writes CRM fixtures the way the sync collaborators would, committing each."""

    def __init__(self, session: Session, workspace_id: str = WS):
        self.session = session
        self.workspace_id = workspace_id

    def _save(self, obj):
        self.session.add(obj)
        self.session.commit()
        return obj

    def deal(self, deal_id, account_id="acc-1", stage="discovery", custom_fields=None, name=""):
        return self._save(Deal(
            id=deal_id, workspace_id=self.workspace_id, account_id=account_id,
            name=name or deal_id, stage_normalized=stage,
            custom_fields_json=json.dumps(custom_fields or {}),
        ))

    def contact(self, contact_id, first=None, last=None, email=None, title=None,
                account_id="acc-1", source_id=None, updated_at=None):
        return self._save(Contact(
            id=contact_id, workspace_id=self.workspace_id, account_id=account_id,
            first_name=first, last_name=last, email=email, title=title,
            source_id=source_id, updated_at=updated_at or BASE_TIME,
        ))

    def row(self, deal_id, contact_id, source="crm_contact_role", buying_role=None, confidence=None,
            role=None, role_source=None, seniority=None, department=None):
        return self._save(DealContact(
            workspace_id=self.workspace_id, deal_id=deal_id, contact_id=contact_id,
            source=source, role=role, buying_role=buying_role,
            role_source=role_source if role_source is not None else source,
            role_confidence=confidence,
            seniority_verified=seniority, department_verified=department,
        ))

    def activities(self, deal_id, contact_id, kinds, day_offsets=None):
        day_offsets = day_offsets or [0] * len(kinds)
        for kind, offset in zip(kinds, day_offsets):
            self.session.add(Activity(
                workspace_id=self.workspace_id, deal_id=deal_id, contact_id=contact_id,
                activity_type=kind, timestamp=BASE_TIME + timedelta(days=offset),
            ))
        self.session.commit()

    def conversation(self, deal_id, participants, title="Discovery call"):
        return self._save(Conversation(
            workspace_id=self.workspace_id, deal_id=deal_id, title=title,
            participants_json=json.dumps(participants),
        ))

    def rows(self, deal_id=None, contact_id=None) -> list[DealContact]:
        self.session.expire_all()
        stmt = select(DealContact).where(DealContact.workspace_id == self.workspace_id)
        if deal_id is not None:
            stmt = stmt.where(DealContact.deal_id == deal_id)
        if contact_id is not None:
            stmt = stmt.where(DealContact.contact_id == contact_id)
        return list(self.session.execute(stmt.order_by(DealContact.id)).scalars().all())


@pytest.fixture()
def crm(session) -> Crm:
    return Crm(session)


@pytest.fixture()
def crm_factory():
    return Crm
