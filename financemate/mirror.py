"""Partner mirroring for shared transactions, budgets and goals.

A shared record owned by one partner has a twin owned by the other, linked by
``shared_from`` on the twin. Writes to either side are copied to the other
for the business fields only. The primary write and the mirror write commit
separately; a failed mirror write is logged and does not fail the request.
"""

import logging

from .db import DATABASE_ERRORS
from .repository import Where


logger = logging.getLogger(__name__)


class SharedEntityMirror:
    def __init__(self, table, business_fields, partner_lookup):
        self.table = table
        self.business_fields = tuple(business_fields)
        self.partner_lookup = partner_lookup

    def _mirror_write(self, action, description, *args):
        try:
            return action()
        except DATABASE_ERRORS:
            logger.exception("Failed to mirror " + description, *args)
            return None

    def create(self, user_id, values, is_shared=False):
        """Insert a record for ``user_id`` and, when shared, a twin for the partner.

        Only the primary record is returned.
        """
        record = self.table.insert({**values, "user_id": user_id, "is_shared": bool(is_shared), "shared_from": None})
        if not is_shared:
            return record

        partner_id = self.partner_lookup(user_id)
        if partner_id is None:
            logger.info("%s %s is shared but user %s has no partner", self.table.name, record["id"], user_id)
            return record

        twin = {name: record[name] for name in self.business_fields}
        twin.update(user_id=partner_id, is_shared=True, shared_from=record["id"])
        self._mirror_write(
            lambda: self.table.insert(twin),
            "new %s %s to partner %s",
            self.table.name,
            record["id"],
            partner_id,
        )
        return record

    def update(self, record_id, user_id, changes):
        """Update a record owned by ``user_id``; returns None when it does not exist."""
        existing = self.table.get(record_id, user_id=user_id)
        if existing is None:
            return None

        owned = Where().eq("id", record_id).eq("user_id", user_id)
        updated = self.table.update(owned, changes)[0]

        shared_changes = {name: updated[name] for name in self.business_fields if name in changes}
        if not shared_changes:
            return updated
        partner_id = self.partner_lookup(user_id)
        if partner_id is None:
            return updated

        if existing["shared_from"] is not None:
            target = Where().eq("id", existing["shared_from"]).eq("user_id", partner_id)
        elif existing["is_shared"] or updated["is_shared"]:
            target = Where().eq("shared_from", record_id).eq("user_id", partner_id)
        else:
            return updated

        self._mirror_write(
            lambda: self.table.update(target, shared_changes),
            "update of %s %s to partner %s",
            self.table.name,
            record_id,
            partner_id,
        )
        return updated

    def delete(self, record_id, user_id, delete_original=False):
        """Delete a record owned by ``user_id``; returns the deleted record or None."""
        existing = self.table.get(record_id, user_id=user_id)
        if existing is None:
            return None

        self.table.delete(Where().eq("id", record_id).eq("user_id", user_id))

        partner_id = self.partner_lookup(user_id)
        if partner_id is None:
            return existing

        if existing["shared_from"] is not None:
            if not delete_original:
                return existing
            target = Where().eq("id", existing["shared_from"]).eq("user_id", partner_id)
        elif existing["is_shared"]:
            target = Where().eq("shared_from", record_id).eq("user_id", partner_id)
        else:
            return existing

        self._mirror_write(
            lambda: self.table.delete(target),
            "delete of %s %s to partner %s",
            self.table.name,
            record_id,
            partner_id,
        )
        return existing
