"""Identity provider adapter backed by the document store.

Identities are kept apart from user profiles: ``identities/{uid}`` holds the
credentials, ``identityEmails/{email}`` claims an address so two concurrent
sign-ups cannot both take it.
"""

import logging
from typing import Optional

from passlib.context import CryptContext

from database import SERVER_TIMESTAMP, DocumentStore
from errors import AuthenticationError, ConflictError

logger = logging.getLogger("oodoo.identity")

IDENTITIES = "identities"
IDENTITY_EMAILS = "identityEmails"

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def normalize_email(email: str) -> str:
    return email.strip().lower()


def _public(identity: dict) -> dict:
    record = dict(identity)
    record.pop("passwordHash", None)
    record["uid"] = record.pop("id")
    return record


class IdentityProvider:
    def __init__(self, store: DocumentStore):
        self.store = store

    def create_user(self, email: str, password: str, display_name: str = "",
                    phone_number: Optional[str] = None) -> dict:
        email = normalize_email(email)
        uid = self.store.new_id()
        password_hash = pwd_context.hash(password)

        def claim(txn):
            if txn.get(IDENTITY_EMAILS, email) is not None:
                raise ConflictError("The email address is already in use by another account.")
            txn.create(IDENTITY_EMAILS, email, {"uid": uid})
            txn.create(IDENTITIES, uid, {
                "email": email,
                "passwordHash": password_hash,
                "displayName": display_name,
                "phoneNumber": phone_number,
                "emailVerified": False,
                "createdAt": SERVER_TIMESTAMP,
            })

        self.store.run_transaction(claim)
        logger.info("Identity created: %s", uid)
        return self.get_user(uid)

    def get_user(self, uid: str) -> Optional[dict]:
        identity = self.store.get(IDENTITIES, uid)
        return _public(identity) if identity else None

    def get_user_by_email(self, email: str) -> Optional[dict]:
        claim = self.store.get(IDENTITY_EMAILS, normalize_email(email))
        if claim is None:
            return None
        return self.get_user(claim["uid"])

    def verify_password(self, email: str, password: str) -> dict:
        claim = self.store.get(IDENTITY_EMAILS, normalize_email(email))
        identity = self.store.get(IDENTITIES, claim["uid"]) if claim else None
        if not identity or not pwd_context.verify(password, identity.get("passwordHash", "")):
            raise AuthenticationError("Invalid email or password")
        return _public(identity)

    def mark_email_verified(self, uid: str) -> None:
        self.store.update(IDENTITIES, uid, {"emailVerified": True})
