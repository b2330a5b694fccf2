# tests/test_listeners.py
"""
Tests for CommissionEntry protection listeners.

Entries are immutable after insert except for a forward status move
(pending → paid, pending → cancelled).
"""
from decimal import Decimal

import pytest

from models.commission import CommissionEntry
from mlm_system.errors import DataIntegrityError


@pytest.fixture
def entry(session, make_participant):
    participant = make_participant()
    record = CommissionEntry(
        recipientID=participant.participantID,
        commissionType="override",
        level=1,
        calculatedAmount=Decimal("50"),
        amount=Decimal("50"),
        status="pending",
    )
    session.add(record)
    session.commit()
    return record


class TestStatusTransitions:

    @pytest.mark.parametrize("newStatus", ["paid", "cancelled"])
    def test_forward_moves_allowed(self, session, entry, newStatus):
        entry.status = newStatus
        session.commit()

        session.refresh(entry)
        assert entry.status == newStatus

    @pytest.mark.parametrize("terminal", ["paid", "cancelled"])
    def test_terminal_statuses_never_reverse(self, session, entry, terminal):
        entry.status = terminal
        session.commit()

        entry.status = "pending"
        with pytest.raises(DataIntegrityError):
            session.commit()
        session.rollback()

        session.refresh(entry)
        assert entry.status == terminal

    def test_paid_cannot_become_cancelled(self, session, entry):
        entry.status = "paid"
        session.commit()

        entry.status = "cancelled"
        with pytest.raises(DataIntegrityError):
            session.flush()
        session.rollback()


class TestImmutableFields:

    def test_amount_cannot_change(self, session, entry):
        entry.amount = Decimal("5000")

        with pytest.raises(DataIntegrityError, match="amount"):
            session.commit()
        session.rollback()

        session.refresh(entry)
        assert entry.amount == Decimal("50")

    def test_recipient_cannot_change(self, session, entry, make_participant):
        other = make_participant()
        session.commit()

        entry.recipientID = other.participantID
        with pytest.raises(DataIntegrityError):
            session.flush()
        session.rollback()

    def test_notes_may_change(self, session, entry):
        entry.notes = "reviewed"
        session.commit()

        session.refresh(entry)
        assert entry.notes == "reviewed"
