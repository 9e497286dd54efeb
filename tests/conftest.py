# tests/conftest.py
"""
Pytest configuration and shared fixtures for the commission engine tests.

Every test gets a fresh in-memory SQLite database with the ledger
listeners registered, default commission rules seeded and the virtual
clock pinned to NOW.

Run:
    pytest tests -v
"""
from datetime import datetime, timedelta

import pytest
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from config import Config
from core.db import build_engine
from models import Base, Member, SponsorBinding, SubscriptionPeriod, SourceEvent, CommissionEntry
from models.listeners import register_all_listeners
from mlm_system.config.structures import StructureType
from mlm_system.services.rule_service import RuleService
from mlm_system.utils.time_machine import timeMachine

# =============================================================================
# CONSTANTS
# =============================================================================

NOW = datetime(2025, 3, 15, 12, 0)
BASE = NOW - timedelta(days=30)  # Default registration / binding time
RULES_FROM = datetime(2000, 1, 1)

BOTH = (StructureType.SUBSCRIPTION, StructureType.PURCHASE)


# =============================================================================
# DATABASE FIXTURES
# =============================================================================

@pytest.fixture(scope="session", autouse=True)
def setup_listeners():
    """Register listeners once at test session start."""
    register_all_listeners()


@pytest.fixture(autouse=True)
def clean_config():
    """Built-in defaults for every test."""
    Config.reset()
    yield
    Config.reset()


@pytest.fixture(autouse=True)
def frozen_time():
    """Pin the virtual clock to NOW."""
    timeMachine.setTime(NOW)
    yield timeMachine
    timeMachine.resetToRealTime()


@pytest.fixture
def engine():
    """In-memory database shared by all sessions of one test."""
    engine = build_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    """Create database session for each test, with default rules."""
    Session = sessionmaker(bind=engine)
    session = Session()
    RuleService(session).seedDefaultRules(RULES_FROM)
    session.commit()
    yield session
    session.close()


# =============================================================================
# NETWORK BUILDER
# =============================================================================

class NetworkBuilder:
    """Creates members, bindings, subscriptions and events directly in the database."""

    def __init__(self, session):
        self.session = session
        self.counter = 0

    def member(self, name=None, sponsor=None, structures=BOTH, at=BASE,
               admin=False, free=False, subscribed=True):
        """Create a member, bound under sponsor in the given structures."""
        self.counter += 1
        member = Member(
            fullName=name or f"Member {self.counter}",
            email=f"member{self.counter}@example.com",
            referralCode=f"CODE{self.counter}",
            isAdmin=admin,
            isMarketingFreeAccess=free,
            createdAt=at
        )
        self.session.add(member)
        self.session.flush()

        if sponsor is not None:
            for structure in structures:
                self.bind(member, sponsor, structure, at=at)

        if subscribed:
            self.subscribe(member, start=at)

        self.session.commit()
        return member

    def admin(self):
        return self.member(name="Admin", admin=True, subscribed=False)

    def bind(self, member, sponsor, structure=StructureType.SUBSCRIPTION, at=BASE, sequence=1):
        binding = SponsorBinding(
            memberID=member.memberID,
            sponsorID=sponsor.memberID,
            structureType=int(structure),
            sequence=sequence,
            boundAt=at
        )
        self.session.add(binding)
        self.session.flush()
        return binding

    def subscribe(self, member, start=BASE, days=60):
        period = SubscriptionPeriod(
            memberID=member.memberID,
            startsAt=start,
            endsAt=start + timedelta(days=days)
        )
        self.session.add(period)
        self.session.flush()
        return period

    def referrals(self, sponsor, count, structures=BOTH, at=BASE):
        """Add filler direct referrals under a sponsor."""
        return [
            self.member(sponsor=sponsor, structures=structures, at=at, subscribed=False)
            for _ in range(count)
        ]

    def chain(self, depth, structures=BOTH, unlock=True):
        """
        Build top -> ... -> payer with depth ancestors above the payer.

        With unlock=True each ancestor gets enough filler referrals to have
        its level unlocked in Structure 1.

        Returns:
            (ancestors ordered level 1..depth, payer)
        """
        thresholds = {2: 3, 3: 5, 4: 8, 5: 10}
        top = self.member(name=f"L{depth}", structures=structures)
        ancestors = [top]
        for level in range(depth - 1, 0, -1):
            ancestors.append(self.member(name=f"L{level}", sponsor=ancestors[-1], structures=structures))
        payer = self.member(name="Payer", sponsor=ancestors[-1], structures=structures, subscribed=False)

        ancestors.reverse()
        if unlock:
            for level, ancestor in enumerate(ancestors, start=1):
                required = thresholds.get(level, 0)
                if required > 1:
                    self.referrals(ancestor, required - 1, structures=structures)

        self.session.commit()
        return ancestors, payer

    def pair(self):
        """Subscribed sponsor with one subscribed referral."""
        sponsor = self.member(name="Sponsor")
        payer = self.member(name="Payer", sponsor=sponsor)
        return sponsor, payer

    def entry(self, event, recipient, amount, level=1, kind="commission", status="pending"):
        """Ledger row written directly, bypassing the calculator."""
        entry = CommissionEntry(
            recipientID=recipient.memberID,
            sourceEventID=event.eventID,
            sourceMemberID=event.memberID,
            level=level,
            structureType=event.structureType,
            amount=amount,
            status=status,
            entryKind=kind
        )
        self.session.add(entry)
        self.session.commit()
        return entry

    def event(self, member, amount, event_type="subscription", at=NOW):
        """Source event without processing, as if the ledger missed it."""
        event = SourceEvent(
            memberID=member.memberID,
            eventType=event_type,
            structureType=1 if event_type == "subscription" else 2,
            amount=amount,
            occurredAt=at
        )
        self.session.add(event)
        self.session.commit()
        return event


@pytest.fixture
def network(session):
    return NetworkBuilder(session)


@pytest.fixture
def admin(network):
    return network.admin()
