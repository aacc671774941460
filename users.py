import logging
from datetime import date
from typing import Optional

from database import SERVER_TIMESTAMP, DocumentStore
from errors import AuthenticationError, ConflictError, DependencyError, NotFoundError, ValidationError
from identity import IdentityProvider
from mailer import Mailer
from schemas import ProfileUpdate, RegisterPayload
from security import Authenticator
from settings import Settings

logger = logging.getLogger("oodoo.users")

USERS = "users"


def calculate_age(born: date, today: Optional[date] = None) -> int:
    today = today or date.today()
    age = today.year - born.year
    if (today.month, today.day) < (born.month, born.day):
        age -= 1
    return age


class UserService:
    def __init__(self, store: DocumentStore, identity: IdentityProvider,
                 authenticator: Authenticator, mailer: Mailer, settings: Settings):
        self.store = store
        self.identity = identity
        self.authenticator = authenticator
        self.mailer = mailer
        self.settings = settings

    def _check_unique(self, uid: Optional[str], username: Optional[str] = None,
                      phone_number: Optional[str] = None) -> None:
        if username is not None:
            taken = self.store.query(USERS, where=[("username", username)], limit=1)
            if taken and taken[0]["id"] != uid:
                raise ConflictError("Username already in use")
        if phone_number is not None:
            taken = self.store.query(USERS, where=[("phoneNumber", phone_number)], limit=1)
            if taken and taken[0]["id"] != uid:
                raise ConflictError("Phone number already in use")

    def register(self, payload: RegisterPayload) -> dict:
        logger.info("Register attempt: %s", payload.username)
        if calculate_age(payload.dateOfBirth) < self.settings.minimum_age:
            raise ValidationError(f"You must be at least {self.settings.minimum_age} years old to register")

        existing = self.identity.get_user_by_email(payload.email)
        if existing is not None:
            # re-registering an address updates its profile, but only for its owner
            self.identity.verify_password(payload.email, payload.password)
        uid = existing["uid"] if existing else None
        self._check_unique(uid, payload.username, payload.phoneNumber)

        display_name = payload.name or f"{payload.firstName} {payload.lastName}"
        profile = payload.model_dump(exclude={"email", "password", "name"})
        profile.update({"dateOfBirth": payload.dateOfBirth.isoformat(), "name": display_name})

        if existing is not None:
            self.store.set(USERS, uid, profile, merge=True)
            logger.info("User updated: %s", uid)
            token = self.authenticator.create_access_token(
                uid, expires_minutes=self.settings.registration_token_expire_minutes
            )
            return {"uid": uid, "message": "User updated", "token": token}

        identity = self.identity.create_user(
            payload.email, payload.password, display_name, payload.phoneNumber
        )
        uid = identity["uid"]
        profile.update({
            "email": identity["email"],
            "verified": False,
            "role": "user",
            "createdAt": SERVER_TIMESTAMP,
        })
        self.store.set(USERS, uid, profile)
        logger.info("User created: %s", uid)

        message = "User created. Verification email sent."
        link = (f"{self.settings.app_url}/users/verify-email?token="
                f"{self.authenticator.create_verification_token(uid)}")
        try:
            self.mailer.send_verification_email(identity["email"], link)
        except DependencyError:
            logger.warning("Verification email for %s not sent", uid)
            message = "User created. Verification email could not be sent."

        token = self.authenticator.create_access_token(
            uid, expires_minutes=self.settings.registration_token_expire_minutes
        )
        return {"uid": uid, "token": token, "message": message}

    def login(self, email: str, password: str) -> dict:
        identity = self.identity.verify_password(email, password)
        uid = identity["uid"]
        profile = self.store.get(USERS, uid)
        if profile is None:
            logger.warning("Login for %s without a profile", uid)
            raise AuthenticationError("User not found")
        role = profile.get("role", "user")
        token = self.authenticator.create_access_token(uid, {"email": identity["email"], "role": role})
        logger.info("User logged in: %s", uid)
        return {
            "message": "Login successful",
            "token": token,
            "user": {
                "uid": uid,
                "email": identity["email"],
                "name": profile.get("name", ""),
                "role": role,
            },
        }

    def get_profile(self, uid: str) -> dict:
        profile = self.store.get(USERS, uid)
        if profile is None:
            logger.warning("Profile not found for user: %s", uid)
            raise NotFoundError("User profile not found")
        return profile

    def update_profile(self, uid: str, changes: ProfileUpdate) -> dict:
        fields = changes.model_dump(exclude_unset=True, exclude_none=True)
        if not fields:
            raise ValidationError("No fields to update")
        self.get_profile(uid)
        self._check_unique(uid, fields.get("username"), fields.get("phoneNumber"))
        self.store.update(USERS, uid, fields)
        logger.info("Profile updated: %s", uid)
        return self.get_profile(uid)

    def verify_email(self, token: str) -> dict:
        uid = self.authenticator.read_verification_token(token)
        if self.identity.get_user(uid) is None:
            raise NotFoundError("User not found")
        self.identity.mark_email_verified(uid)
        if self.store.get(USERS, uid) is not None:
            self.store.update(USERS, uid, {"verified": True})
        logger.info("Email verified: %s", uid)
        return {"uid": uid, "message": "Email verified"}
