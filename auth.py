import base64
import hashlib
import hmac
import json
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from pymongo.database import Database

import settings
from database import get_db, now
from schemas import LoginRequest, ProfileUpdate, UserCreate, UserPublic

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")


# Simple JWT (HS256) without external deps
def _b64url_encode(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).rstrip(b"=").decode()


def _b64url_decode(s: str) -> bytes:
    pad = '=' * (-len(s) % 4)
    return base64.urlsafe_b64decode(s + pad)


def jwt_encode(payload: dict, secret: str) -> str:
    header = {"alg": "HS256", "typ": "JWT"}
    header_b64 = _b64url_encode(json.dumps(header, separators=(',', ':')).encode())
    payload_b64 = _b64url_encode(json.dumps(payload, default=str, separators=(',', ':')).encode())
    signing_input = f"{header_b64}.{payload_b64}".encode()
    signature = hmac.new(secret.encode(), signing_input, hashlib.sha256).digest()
    return f"{header_b64}.{payload_b64}.{_b64url_encode(signature)}"


def jwt_decode(token: str, secret: str) -> dict:
    try:
        header_b64, payload_b64, sig_b64 = token.split('.')
    except ValueError:
        raise ValueError("Malformed token")
    signing_input = f"{header_b64}.{payload_b64}".encode()
    expected_sig = hmac.new(secret.encode(), signing_input, hashlib.sha256).digest()
    if not hmac.compare_digest(_b64url_encode(expected_sig), sig_b64):
        raise ValueError("Invalid signature")
    try:
        payload = json.loads(_b64url_decode(payload_b64))
    except (ValueError, UnicodeDecodeError):
        raise ValueError("Malformed payload")
    if "exp" in payload and datetime.now(timezone.utc).timestamp() > float(payload["exp"]):
        raise ValueError("Token expired")
    return payload


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode["exp"] = int(expire.timestamp())
    return jwt_encode(to_encode, settings.JWT_SECRET)


# Passwords: pbkdf2 with a per-user salt, stored as "pbkdf2_sha256$iterations$salt$hash"
PBKDF2_ITERATIONS = 120_000


def hash_password(password: str, salt: Optional[str] = None, iterations: int = PBKDF2_ITERATIONS) -> str:
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), iterations).hex()
    return f"pbkdf2_sha256${iterations}${salt}${digest}"


def verify_password(password: str, hashed: str) -> bool:
    try:
        _, iterations, salt, _ = hashed.split("$")
        return hmac.compare_digest(hash_password(password, salt, int(iterations)), hashed)
    except (ValueError, AttributeError):
        return False


def user_public(user: dict) -> Dict[str, Any]:
    return UserPublic(
        id=str(user["_id"]),
        name=user.get("name", ""),
        email=user["email"],
        role=user.get("role", "user"),
        phone=user.get("phone"),
        address=user.get("address"),
    ).model_dump(by_alias=True)


# Dependencies
def get_current_user(token: str = Depends(oauth2_scheme), database: Database = Depends(get_db)) -> dict:
    try:
        payload = jwt_decode(token, settings.JWT_SECRET)
        user_id = payload.get("sub")
        if not user_id or not ObjectId.is_valid(user_id):
            raise ValueError("No sub")
    except ValueError as e:
        logger.info("Rejected token: %s", e)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Could not validate credentials")
    user = database["user"].find_one({"_id": ObjectId(user_id)})
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
    return user


def require_admin(current_user: dict = Depends(get_current_user)) -> dict:
    if current_user.get("role") != "admin":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin only")
    return current_user


def is_admin(user: dict) -> bool:
    return user.get("role") == "admin"


# Routes
@router.post("/register", status_code=201)
def register(payload: UserCreate, database: Database = Depends(get_db)):
    email = payload.email.lower()
    if database["user"].find_one({"email": email}):
        raise HTTPException(status_code=400, detail="Email already in use")
    doc = {
        "name": payload.name,
        "email": email,
        "passwordHash": hash_password(payload.password),
        "role": "user",
        "phone": payload.phone,
        "address": payload.address,
        "createdAt": now(),
        "updatedAt": now(),
    }
    res = database["user"].insert_one(doc)
    doc["_id"] = res.inserted_id
    logger.info("Registered user %s", res.inserted_id)
    return {
        "success": True,
        "message": "Registration successful",
        "token": create_access_token({"sub": str(res.inserted_id)}),
        "user": user_public(doc),
    }


@router.post("/login")
def login(payload: LoginRequest, database: Database = Depends(get_db)):
    user = database["user"].find_one({"email": payload.email.lower()})
    if not user or not verify_password(payload.password, user.get("passwordHash", "")):
        raise HTTPException(status_code=401, detail="Incorrect email or password")
    return {
        "success": True,
        "message": "Login successful",
        "token": create_access_token({"sub": str(user["_id"])}),
        "user": user_public(user),
    }


@router.get("/me")
def get_me(current_user: dict = Depends(get_current_user)):
    return {"success": True, "data": user_public(current_user)}


@router.put("/profile")
def update_profile(body: ProfileUpdate, current_user: dict = Depends(get_current_user), database: Database = Depends(get_db)):
    update: Dict[str, Any] = {}
    if body.name is not None:
        update["name"] = body.name
    if body.phone is not None:
        update["phone"] = body.phone
    if body.address is not None:
        update["address"] = body.address
    if body.password is not None:
        update["passwordHash"] = hash_password(body.password)
    if update:
        update["updatedAt"] = now()
        database["user"].update_one({"_id": current_user["_id"]}, {"$set": update})
    user = database["user"].find_one({"_id": current_user["_id"]})
    return {"success": True, "message": "Profile updated successfully", "data": user_public(user)}
