# tests/conftest.py
"""
Pytest configuration and shared fixtures for engine tests.

Every test gets a fresh in-memory SQLite database, default configuration,
an empty event bus and a frozen clock (see FROZEN_NOW).

Run:
    pytest tests/ -v
"""
import itertools
from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import models  # noqa: F401  registers all mappers
from config import Config
from core.db import enable_sqlite_savepoints
from models.base import Base
from models.membership_plan import MembershipPlan
from models.participant import Participant
from models.sale import Sale
from models.listeners import register_all_listeners
from mlm_system.config.ranks import reset_compensation_plan_cache
from mlm_system.events.event_bus import eventBus
from mlm_system.utils.time_machine import timeMachine

# =============================================================================
# CONSTANTS
# =============================================================================

# One hour after the October 2024 month end
FROZEN_NOW = datetime(2024, 11, 1, 1, 0)

# Long before FROZEN_NOW, so cooling-off is over
LONG_AGO = datetime(2024, 1, 1)

OCTOBER_SALE = datetime(2024, 10, 15, 12, 0)


# =============================================================================
# DATABASE FIXTURES
# =============================================================================

@pytest.fixture(scope="session", autouse=True)
def setup_listeners():
    """Register listeners once at test session start."""
    register_all_listeners()


@pytest.fixture
def engine():
    """Fresh in-memory database per test, shared across threads."""
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    enable_sqlite_savepoints(engine)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    """Create database session for each test."""
    Session = sessionmaker(bind=engine)
    session = Session()
    yield session
    session.close()


@pytest.fixture(autouse=True)
def clean_state():
    """Default config, fresh plan cache, no subscribers, frozen clock."""
    Config.reset()
    reset_compensation_plan_cache()
    eventBus.clear()
    timeMachine.setTime(FROZEN_NOW)
    yield
    timeMachine.resetToRealTime()
    eventBus.clear()
    reset_compensation_plan_cache()
    Config.reset()


# =============================================================================
# BUILDER FIXTURES
# =============================================================================

@pytest.fixture
def make_participant(session):
    """
    Create and flush a participant.

    Usage:
        root = make_participant()
        child = make_participant(sponsor=root, rank="gold")
    """
    counter = itertools.count(1)

    def _make(
            sponsor=None,
            rank="starter",
            isActive=True,
            joinedAt=LONG_AGO,
            code=None,
            plan=None,
            **fields
    ):
        participant = Participant(
            sponsorID=sponsor.participantID if sponsor is not None else None,
            referralCode=code or f"TRV{next(counter):06d}",
            rank=rank,
            isActive=isActive,
            status="active" if isActive else "cancelled",
            joinedAt=joinedAt,
            planID=plan.planID if plan is not None else None,
            **fields
        )
        session.add(participant)
        session.flush()
        return participant

    return _make


@pytest.fixture
def make_chain(make_participant):
    """
    Build a straight sponsorship line, top first.

    Usage:
        top, middle, bottom = make_chain("diamond", "gold", "silver")
    """

    def _make(*ranks):
        chain = []
        sponsor = None
        for rank in ranks:
            sponsor = make_participant(sponsor=sponsor, rank=rank)
            chain.append(sponsor)
        return chain

    return _make


@pytest.fixture
def add_sale(session):
    """Record a qualifying sale (defaults inside October 2024)."""

    def _add(participant, amount, occurredAt=OCTOBER_SALE, **fields):
        sale = Sale(
            participantID=participant.participantID,
            amount=Decimal(str(amount)),
            occurredAt=occurredAt,
            **fields
        )
        session.add(sale)
        session.flush()
        return sale

    return _add


@pytest.fixture
def make_plan(session):
    """Create a membership plan."""

    def _make(price="100", earningsCap=None, name="Basic"):
        plan = MembershipPlan(
            name=name,
            price=Decimal(price),
            earningsCap=Decimal(earningsCap) if earningsCap is not None else None,
        )
        session.add(plan)
        session.flush()
        return plan

    return _make


@pytest.fixture
def captured_events():
    """
    Subscribe a recorder to the given events.

    Usage:
        events = captured_events("run.completed")
        ...
        assert events[0][0] == "run.completed"
    """
    received = []

    def _capture(*eventNames):
        for eventName in eventNames:
            def handler(data, eventName=eventName):
                received.append((eventName, data))
            handler.__name__ = f"record_{eventName}"
            eventBus.subscribe(eventName, handler)
        return received

    return _capture
