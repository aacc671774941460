"""Homes: shared living spaces with an owner, occupants and data feeds.

The owner manages the home and its occupants; owner and occupants may read
the home and append to its ``privateData`` and ``publicData`` feeds.
"""

import logging
from typing import List

from database import SERVER_TIMESTAMP, ArrayRemove, ArrayUnion, DocumentStore, check_doc_id
from errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from schemas import HomeDataIn, HomeIn, HomeUpdate
from users import USERS

logger = logging.getLogger("oodoo.homes")

HOMES = "homes"
PRIVATE_DATA = "privateData"
PUBLIC_DATA = "publicData"
DATA_KINDS = (PRIVATE_DATA, PUBLIC_DATA)


def data_path(home_id: str, kind: str) -> str:
    return f"{HOMES}/{check_doc_id(home_id)}/{kind}"


def _is_member(home: dict, user_id: str) -> bool:
    return home.get("ownerId") == user_id or user_id in home.get("occupants", [])


class HomeService:
    def __init__(self, store: DocumentStore):
        self.store = store

    def _load(self, home_id: str) -> dict:
        home = self.store.get(HOMES, home_id)
        if home is None:
            raise NotFoundError("Home not found")
        return home

    def _load_owned(self, home_id: str, caller_id: str, action: str) -> dict:
        home = self._load(home_id)
        if home.get("ownerId") != caller_id:
            raise AuthorizationError(f"Unauthorized: Only owner can {action}")
        return home

    def _load_for_member(self, home_id: str, caller_id: str, action: str) -> dict:
        home = self._load(home_id)
        if not _is_member(home, caller_id):
            raise AuthorizationError(f"Unauthorized to {action}")
        return home

    def create_home(self, caller_id: str, payload: HomeIn) -> dict:
        home = payload.model_dump(exclude_none=True)
        home.update({
            "ownerId": payload.ownerId or caller_id,
            "occupants": [],
            "createdAt": SERVER_TIMESTAMP,
        })
        home_id = self.store.add(HOMES, home)
        logger.info("Home created: %s owner %s", home_id, home["ownerId"])
        return self._load(home_id)

    def get_home(self, home_id: str, caller_id: str) -> dict:
        return self._load_for_member(home_id, caller_id, "view this home")

    def update_home(self, home_id: str, caller_id: str, changes: HomeUpdate) -> dict:
        fields = changes.model_dump(exclude_unset=True, exclude_none=True)
        if not fields:
            raise ValidationError("No fields to update")
        self._load_owned(home_id, caller_id, "update this home")
        self.store.update(HOMES, home_id, fields)
        logger.info("Home updated: %s", home_id)
        return {"success": True, "message": "Home updated"}

    def delete_home(self, home_id: str, caller_id: str) -> dict:
        self._load_owned(home_id, caller_id, "delete this home")
        self.store.delete(HOMES, home_id)
        logger.info("Home deleted: %s", home_id)
        return {"success": True, "message": "Home deleted"}

    def attach_user(self, home_id: str, caller_id: str, user_id: str) -> dict:
        def attach(txn):
            home = txn.get(HOMES, home_id)
            if home is None:
                raise NotFoundError("Home not found")
            if home.get("ownerId") != caller_id:
                raise AuthorizationError("Unauthorized: Only owner can attach users")
            if user_id in home.get("occupants", []):
                raise ConflictError("User already attached")
            if txn.get(USERS, user_id) is None:
                raise NotFoundError("User not found")
            txn.update(HOMES, home_id, {"occupants": ArrayUnion(user_id)})
            txn.update(USERS, user_id, {"currentHomeId": home_id})

        self.store.run_transaction(attach)
        logger.info("User attached to home: %s -> %s", user_id, home_id)
        return {"success": True, "message": "User attached"}

    def detach_user(self, home_id: str, caller_id: str, user_id: str) -> dict:
        def detach(txn):
            home = txn.get(HOMES, home_id)
            if home is None:
                raise NotFoundError("Home not found")
            if home.get("ownerId") != caller_id:
                raise AuthorizationError("Unauthorized: Only owner can detach users")
            if user_id not in home.get("occupants", []):
                raise ConflictError("User not attached")
            user = txn.get(USERS, user_id)
            txn.update(HOMES, home_id, {"occupants": ArrayRemove(user_id)})
            if user is not None and user.get("currentHomeId") == home_id:
                txn.update(USERS, user_id, {"currentHomeId": None})

        self.store.run_transaction(detach)
        logger.info("User detached from home: %s -> %s", user_id, home_id)
        return {"success": True, "message": "User detached"}

    def add_data(self, home_id: str, caller_id: str, kind: str, payload: HomeDataIn) -> dict:
        if kind not in DATA_KINDS:
            raise ValidationError("Unknown data kind")
        self._load_for_member(home_id, caller_id, f"add {kind}")
        entry_id = self.store.add(data_path(home_id, kind), {
            "type": payload.type,
            "data": payload.data,
            "createdBy": caller_id,
            "createdAt": SERVER_TIMESTAMP,
        })
        logger.info("%s added to home %s: %s", kind, home_id, payload.type)
        return {"id": entry_id, "type": payload.type, "data": payload.data}

    def list_data(self, home_id: str, caller_id: str, kind: str) -> List[dict]:
        if kind not in DATA_KINDS:
            raise ValidationError("Unknown data kind")
        self._load_for_member(home_id, caller_id, f"view {kind}")
        return self.store.query(data_path(home_id, kind), order_by=[("createdAt", "asc")])
