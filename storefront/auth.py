import re
from dataclasses import dataclass
from datetime import datetime
from functools import wraps
from typing import Optional

import bcrypt
from flask import current_app
from flask_jwt_extended import (
    create_access_token,
    get_jwt,
    get_jwt_identity,
    set_access_cookies,
    unset_jwt_cookies,
    verify_jwt_in_request,
)
from flask_jwt_extended.exceptions import CSRFError
from jwt.exceptions import InvalidTokenError
from pymongo.errors import DuplicateKeyError, PyMongoError

from .errors import AuthenticationError, AuthorizationError, InputError, UpstreamError

MIN_PASSWORD_LENGTH = 6

email_regex = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def normalize_email(value: Optional[str]) -> str:
    return str(value or "").strip().lower()


def is_valid_email(value: Optional[str]) -> bool:
    normalized = normalize_email(value)
    return bool(normalized and email_regex.match(normalized))


@dataclass(frozen=True)
class Principal:
    """Identity of the caller for the current request."""

    user_id: Optional[str] = None
    email: Optional[str] = None
    is_admin: bool = False

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None


ANONYMOUS = Principal()


class AccountService:
    """Email/password accounts backed by the ``users`` collection.

    Admin status is not stored on the account: it comes from the
    ``app_admins`` roster, keyed by user id.
    """

    def __init__(self, db):
        self.users = db.users
        self.admins = db.app_admins

    def sign_up(self, email: str, password: str):
        email = normalize_email(email)
        password = str(password or "")
        if not is_valid_email(email):
            raise InputError("Please enter a valid email address.")
        if len(password) < MIN_PASSWORD_LENGTH:
            raise InputError(
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters."
            )

        try:
            if self.users.find_one({"email": email}):
                # Existing accounts sign in with the submitted credentials.
                return self.sign_in_with_password(email, password)

            user_document = {
                "email": email,
                "password": bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()),
                "created_at": datetime.utcnow(),
            }
            result = self.users.insert_one(user_document)
        except DuplicateKeyError:
            return self.sign_in_with_password(email, password)
        except PyMongoError as exc:
            raise UpstreamError(f"Account could not be created: {exc}") from exc

        user_document["_id"] = result.inserted_id
        return user_document

    def sign_in_with_password(self, email: str, password: str):
        email = normalize_email(email)
        password = str(password or "")
        if not email or not password:
            raise InputError("Email and password are required.")

        try:
            user = self.users.find_one({"email": email})
        except PyMongoError as exc:
            raise UpstreamError(f"Sign-in is unavailable: {exc}") from exc

        if not user or not bcrypt.checkpw(password.encode("utf-8"), user["password"]):
            raise AuthenticationError("Invalid login credentials.")
        return user

    def is_admin(self, user_id) -> bool:
        try:
            return self.admins.find_one({"id": str(user_id)}) is not None
        except PyMongoError as exc:
            current_app.logger.warning(
                "Admin lookup failed for %s, treating as non-admin: %s", user_id, exc
            )
            return False


def start_session(response, user_document, is_admin: bool):
    token = create_access_token(
        identity=str(user_document["_id"]),
        additional_claims={
            "email": user_document.get("email", ""),
            "is_admin": bool(is_admin),
        },
    )
    set_access_cookies(response, token)
    return response


def end_session(response):
    unset_jwt_cookies(response)
    return response


def current_principal() -> Principal:
    try:
        verify_jwt_in_request(optional=True)
    except (InvalidTokenError, CSRFError):
        return ANONYMOUS

    user_id = get_jwt_identity()
    if not user_id:
        return ANONYMOUS

    claims = get_jwt()
    return Principal(
        user_id=str(user_id),
        email=claims.get("email"),
        is_admin=bool(claims.get("is_admin", False)),
    )


def admin_required(view):
    """Reject the request with a 403 unless the caller's token says admin."""

    @wraps(view)
    def wrapper(*args, **kwargs):
        principal = current_principal()
        if not principal.is_admin:
            current_app.logger.warning(
                "Rejected admin-only request from %s", principal.email or "anonymous"
            )
            raise AuthorizationError()
        return view(*args, **kwargs)

    return wrapper
