"""Gig lifecycle.

A gig moves ``open -> accepted -> completed | cancelled``.  Acceptance is the
one operation that needs cross-request exclusivity: it runs as a single store
transaction that re-checks the gig is still open, so when several users race
for the same gig exactly one commit observes ``open``.  The others are
replayed by the store, observe ``accepted`` and fail with a conflict.

Documents::

    gigs/{gigId}                                      the public gig
    gigs/{gigId}/private/location                     exact coordinates
    gigs/{gigId}/assignments/{userId}                 one per accepting user
    gigs/{gigId}/assignments/{userId}/history/{id}    append-only transitions
"""

import logging
import re
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional

from database import SERVER_TIMESTAMP, DocumentStore, check_doc_id
from errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from schemas import GigIn

logger = logging.getLogger("oodoo.gigs")

GIGS = "gigs"
OPEN = "open"
ACCEPTED = "accepted"
COMPLETED = "completed"
CANCELLED = "cancelled"
GIG_STATUSES = (OPEN, ACCEPTED, COMPLETED, CANCELLED)

MAX_PAGE_SIZE = 100
_SORT_FIELD = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def private_path(gig_id: str) -> str:
    return f"{GIGS}/{check_doc_id(gig_id)}/private"


def assignments_path(gig_id: str) -> str:
    return f"{GIGS}/{check_doc_id(gig_id)}/assignments"


def history_path(gig_id: str, user_id: str) -> str:
    return f"{assignments_path(gig_id)}/{check_doc_id(user_id)}/history"


def blur_coordinate(value: float) -> float:
    """Round to one decimal place (about 11 km), halves away from zero."""
    return float(Decimal(str(value)).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


def approximate_location(latitude: float, longitude: float) -> dict:
    return {"latitude": blur_coordinate(latitude), "longitude": blur_coordinate(longitude)}


def parse_sort(sort: Optional[str]) -> Optional[tuple]:
    """Parse ``field:direction`` (direction defaults to ``desc``)."""
    if not sort:
        return None
    field, _, direction = sort.partition(":")
    direction = (direction or "desc").lower()
    if not _SORT_FIELD.match(field) or direction not in ("asc", "desc"):
        raise ValidationError("Invalid sort, expected field:asc or field:desc")
    return field, direction


class GigService:
    def __init__(self, store: DocumentStore):
        self.store = store

    def create_gig(self, creator_id: str, payload: GigIn) -> dict:
        if not creator_id:
            raise AuthenticationError("User ID missing in token payload", status_code=403)

        gig_id = self.store.new_id()
        gig = payload.model_dump(exclude={"location", "attachments"}, exclude_none=True)
        gig.update({
            "attachments": [str(uri) for uri in payload.attachments],
            "userId": creator_id,
            "status": OPEN,
            "createdAt": SERVER_TIMESTAMP,
        })
        exact = payload.location
        if exact is not None:
            gig["approximateLocation"] = approximate_location(exact.latitude, exact.longitude)

        def write(txn):
            txn.create(GIGS, gig_id, gig)
            if exact is not None:
                txn.create(private_path(gig_id), "location", exact.model_dump())

        self.store.run_transaction(write)
        logger.info("Gig created: %s by %s", gig_id, creator_id)
        return self.get_gig(gig_id)

    def list_gigs(self, status: Optional[str] = None, sort: Optional[str] = None,
                  limit: int = 10, offset: int = 0) -> List[dict]:
        if limit < 1 or limit > MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
        if offset < 0:
            raise ValidationError("offset must not be negative")
        ordering = parse_sort(sort)
        return self.store.query(
            GIGS,
            where=[("status", status)] if status else None,
            order_by=[ordering] if ordering else None,
            limit=limit,
            offset=offset,
        )

    def get_gig(self, gig_id: str) -> dict:
        gig = self.store.get(GIGS, gig_id)
        if gig is None:
            raise NotFoundError("Gig not found")
        return gig

    def list_user_gigs(self, caller_id: str, user_id: str) -> List[dict]:
        if caller_id != user_id:
            raise AuthorizationError("Unauthorized")
        return self.store.query(GIGS, where=[("userId", user_id)])

    def accept_gig(self, gig_id: str, caller_id: str) -> dict:
        def accept(txn):
            gig = txn.get(GIGS, gig_id)
            if gig is None:
                raise NotFoundError("Gig not found")
            if gig.get("userId") == caller_id:
                raise ConflictError("Cannot accept your own gig", status_code=403)
            if gig.get("status") != OPEN:
                raise ConflictError("Gig is not open for acceptance")
            assignment = txn.get(assignments_path(gig_id), caller_id)

            txn.update(GIGS, gig_id, {
                "status": ACCEPTED,
                "acceptedBy": caller_id,
                "acceptedAt": SERVER_TIMESTAMP,
            })
            if assignment is None:
                txn.create(assignments_path(gig_id), caller_id, {
                    "gigId": gig_id,
                    "userId": caller_id,
                    "currentStatus": ACCEPTED,
                    "createdAt": SERVER_TIMESTAMP,
                    "updatedAt": SERVER_TIMESTAMP,
                })
            else:
                # reopened by its creator and taken again by the same user
                txn.update(assignments_path(gig_id), caller_id, {
                    "currentStatus": ACCEPTED,
                    "updatedAt": SERVER_TIMESTAMP,
                })
            txn.add(history_path(gig_id, caller_id), {
                "status": ACCEPTED,
                "timestamp": SERVER_TIMESTAMP,
                "actorId": caller_id,
            })

        try:
            self.store.run_transaction(accept)
        except ConflictError as exc:
            logger.info("Accept of gig %s by %s refused: %s", gig_id, caller_id, exc.message)
            raise
        logger.info("Gig accepted: %s by %s", gig_id, caller_id)
        return {"success": True, "message": "Gig accepted", "gig": self.get_gig(gig_id)}

    def update_status(self, gig_id: str, status: str, caller_id: str) -> dict:
        # Creator-only and unguarded: any status may overwrite any other, and no
        # history entry is appended (only acceptance records history).
        if status not in GIG_STATUSES:
            raise ValidationError("Invalid status")
        gig = self.get_gig(gig_id)
        if gig.get("userId") != caller_id:
            raise AuthorizationError("Not allowed to update this gig")
        self.store.update(GIGS, gig_id, {"status": status})
        logger.info("Gig %s status %s -> %s", gig_id, gig.get("status"), status)
        return {"success": True, "message": f"Gig status updated to {status}"}

    def get_exact_location(self, gig_id: str, caller_id: str) -> dict:
        gig = self.get_gig(gig_id)
        if caller_id not in (gig.get("userId"), gig.get("acceptedBy")):
            raise AuthorizationError("Not allowed to view this location")
        location = self.store.get(private_path(gig_id), "location")
        if location is None:
            raise NotFoundError("Gig has no location")
        location.pop("id", None)
        return location

    def get_assignment_history(self, gig_id: str, user_id: str, caller_id: str) -> dict:
        gig = self.get_gig(gig_id)
        if caller_id not in (gig.get("userId"), user_id):
            raise AuthorizationError("Not allowed to view this assignment")
        assignment = self.store.get(assignments_path(gig_id), user_id)
        if assignment is None:
            raise NotFoundError("Assignment not found")
        history = self.store.query(history_path(gig_id, user_id), order_by=[("timestamp", "asc")])
        return {"assignment": assignment, "history": history}
