# models/listeners/commission_listeners.py
"""
Commission Event Listeners - protect CommissionEntry after insert.

Rules:
    - Only status, paidAt, payoutID, notes and updatedAt may change.
    - status moves forward only: pending → paid, pending → cancelled.
      paid and cancelled are terminal.

The stored row is read through the flush connection, so the check also
holds for expired instances whose old values were never loaded.
Violations raise DataIntegrityError from inside the flush, so the
surrounding transaction (or savepoint) is rolled back.
"""
import logging

from sqlalchemy import event, inspect, select

logger = logging.getLogger(__name__)

MUTABLE_FIELDS = {"status", "paidAt", "payoutID", "notes", "updatedAt"}

ALLOWED_TRANSITIONS = {
    "pending": {"pending", "paid", "cancelled"},
    "paid": {"paid"},
    "cancelled": {"cancelled"},
}


def register_commission_protection():
    """
    Register before_update guard on CommissionEntry.

    Called once during application startup from models/listeners/__init__.py
    """
    from models.commission import CommissionEntry
    from mlm_system.errors import DataIntegrityError

    table = CommissionEntry.__table__

    def guard_commission_update(mapper, connection, target):
        state = inspect(target)
        changed = [
            attr.key for attr in state.mapper.column_attrs
            if state.attrs[attr.key].history.added
        ]
        if not changed:
            return

        # Stored values before this flush
        stored = connection.execute(
            select(table).where(table.c.entryID == target.entryID)
        ).mappings().first()
        if stored is None:
            return

        for key in changed:
            if key in MUTABLE_FIELDS:
                continue
            new_value = getattr(target, key)
            if stored[key] != new_value:
                logger.error(
                    f"Blocked change of immutable field {key} on commission "
                    f"{target.entryID}: {stored[key]} → {new_value}"
                )
                raise DataIntegrityError(
                    f"CommissionEntry {target.entryID}: field '{key}' is immutable"
                )

        if "status" in changed:
            old_status = stored["status"]
            new_status = target.status
            if new_status not in ALLOWED_TRANSITIONS.get(old_status, set()):
                logger.error(
                    f"Blocked status transition on commission {target.entryID}: "
                    f"{old_status} → {new_status}"
                )
                raise DataIntegrityError(
                    f"CommissionEntry {target.entryID}: status cannot move "
                    f"from '{old_status}' to '{new_status}'"
                )

    event.listen(CommissionEntry, 'before_update', guard_commission_update)
