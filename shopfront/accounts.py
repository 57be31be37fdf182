import hashlib
import logging
import secrets
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

import bcrypt

from .errors import AuthenticationError, ConflictError, NotFound, ValidationError
from .utils import (
    ALLOWED_USER_ROLES,
    is_valid_email,
    normalize_email,
    normalize_role,
    parse_object_id,
)

logger = logging.getLogger(__name__)

SELF_SERVICE_ROLES = {"customer", "vendor"}
MIN_PASSWORD_LENGTH = 6


def hash_password(password: str) -> bytes:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt())


def check_password(password: str, password_hash) -> bool:
    if not password_hash:
        return False
    if isinstance(password_hash, str):
        password_hash = password_hash.encode("utf-8")
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash)
    except ValueError:
        return False


def hash_reset_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _validate_new_password(password: str) -> None:
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"Passwords must be at least {MIN_PASSWORD_LENGTH} characters long."
        )


def register_user(db, payload: Dict) -> Dict:
    username = str(payload.get("username", "")).strip()
    email = normalize_email(payload.get("email"))
    password = str(payload.get("password", ""))

    if not username or not email or not password:
        raise ValidationError("Username, email, and password are required.")
    if not is_valid_email(email):
        raise ValidationError("Please provide a valid email address.")
    _validate_new_password(password)

    requested_role = str(payload.get("role") or "customer").strip().lower()
    if requested_role not in SELF_SERVICE_ROLES:
        raise ValidationError("You can only register as a customer or a vendor.")

    if db.users.find_one({"email": email}):
        raise ConflictError("User with this email already exists.")
    if db.users.find_one({"username": username}):
        raise ConflictError("User with this username already exists.")

    user_document = {
        "username": username,
        "email": email,
        "password_hash": hash_password(password),
        "role": requested_role,
        "profile_image_url": "",
        "reset_token": None,
        "reset_token_expiry": None,
        "created_at": datetime.utcnow(),
    }
    user_document["_id"] = db.users.insert_one(user_document).inserted_id
    logger.info("Registered %s as %s", email, requested_role)
    return user_document


def authenticate(db, email: Optional[str], password: Optional[str]) -> Dict:
    normalized_email = normalize_email(email)
    if not normalized_email or not password:
        raise ValidationError("Email and password are required.")

    user_document = db.users.find_one({"email": normalized_email})
    if not user_document or not check_password(str(password), user_document.get("password_hash")):
        raise AuthenticationError("Invalid credentials.")

    db.users.update_one(
        {"_id": user_document["_id"]},
        {"$set": {"last_login_at": datetime.utcnow()}},
    )
    return user_document


def change_password(db, user_document: Dict, current_password: str, new_password: str) -> None:
    if not current_password or not new_password:
        raise ValidationError("Current and new passwords are required.")
    if not check_password(current_password, user_document.get("password_hash")):
        raise AuthenticationError("Current password is incorrect.")
    _validate_new_password(new_password)

    db.users.update_one(
        {"_id": user_document["_id"]},
        {"$set": {"password_hash": hash_password(new_password)}},
    )


def begin_password_reset(db, user_document: Dict, expiration_minutes: int) -> Tuple[str, datetime]:
    """Store a hashed reset token on the user and return the raw token."""
    token = secrets.token_hex(32)
    expires_at = datetime.utcnow() + timedelta(minutes=expiration_minutes)
    db.users.update_one(
        {"_id": user_document["_id"]},
        {"$set": {"reset_token": hash_reset_token(token), "reset_token_expiry": expires_at}},
    )
    return token, expires_at


def reset_password(db, token: Optional[str], new_password: Optional[str]) -> Dict:
    token = str(token or "").strip()
    new_password = str(new_password or "")
    if not token or not new_password:
        raise ValidationError("Reset token and new password are required.")

    user_document = db.users.find_one(
        {
            "reset_token": hash_reset_token(token),
            "reset_token_expiry": {"$gt": datetime.utcnow()},
        }
    )
    if not user_document:
        raise ValidationError("Invalid or expired reset token.")
    _validate_new_password(new_password)

    db.users.update_one(
        {"_id": user_document["_id"]},
        {
            "$set": {
                "password_hash": hash_password(new_password),
                "reset_token": None,
                "reset_token_expiry": None,
            }
        },
    )
    return user_document


def get_user(db, user_id) -> Dict:
    user_document = db.users.find_one({"_id": parse_object_id(user_id, "user identifier")})
    if not user_document:
        raise NotFound("User not found.")
    return user_document


def list_users(db, role: Optional[str] = None) -> List[Dict]:
    query = {"role": normalize_role(role)} if role else {}
    return list(db.users.find(query).sort("created_at", -1))


def set_user_role(db, user_id, role: Optional[str]) -> Dict:
    desired_role = str(role or "").strip().lower()
    if desired_role not in ALLOWED_USER_ROLES:
        raise ValidationError(
            f"Role must be one of: {', '.join(sorted(ALLOWED_USER_ROLES))}."
        )

    user_document = get_user(db, user_id)
    db.users.update_one({"_id": user_document["_id"]}, {"$set": {"role": desired_role}})
    user_document["role"] = desired_role
    return user_document
