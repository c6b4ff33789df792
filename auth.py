import logging
from datetime import datetime, timedelta, timezone
from typing import Annotated, Any, Dict, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, Header
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, ConfigDict, EmailStr, Field, StringConstraints, model_validator
from pymongo.errors import DuplicateKeyError

from config import ACCESS_TOKEN_EXPIRE_MINUTES, ADMIN_EMAILS, ALGORITHM, SECRET_KEY
from database import get_db
from errors import Conflict, NotFound, PermissionDenied, Unauthenticated
from repository import to_object_id
from schemas import User as UserSchema, utcnow

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

router = APIRouter(prefix="/api/auth", tags=["auth"])

# Utilities

def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    if not hashed_password:
        return False
    return pwd_context.verify(plain_password, hashed_password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        raise Unauthenticated("Invalid token")


def token_claims(user: Dict[str, Any]) -> Dict[str, Any]:
    return {"sub": str(user["_id"]), "email": user.get("email"), "role": user.get("role", "user")}


def serialize_user(doc: Dict[str, Any]) -> Dict[str, Any]:
    if not doc:
        return doc
    doc = dict(doc)
    _id = doc.pop("_id", None)
    if _id is not None:
        doc["id"] = str(_id)
    for k, v in list(doc.items()):
        if isinstance(v, ObjectId):
            doc[k] = str(v)
    # Never send password hash
    doc.pop("passwordHash", None)
    return doc


# Identity from the bearer token

class Identity(BaseModel):
    id: str
    email: Optional[str] = None
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def get_identity(authorization: Optional[str] = Header(default=None)) -> Identity:
    if not authorization or not authorization.startswith("Bearer "):
        raise Unauthenticated("No token provided")
    payload = decode_token(authorization.split(" ", 1)[1])
    user_id = payload.get("sub")
    if not user_id:
        raise Unauthenticated("Invalid token")
    return Identity(id=user_id, email=payload.get("email"), role=payload.get("role") or "user")


def require_admin(identity: Identity = Depends(get_identity)) -> Identity:
    if not identity.is_admin:
        raise PermissionDenied("Forbidden")
    return identity


# Auth models

class SignInInput(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class SignUpInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=100)]
    email: EmailStr
    password: str = Field(..., min_length=6)
    confirm_password: str = Field(..., alias="confirmPassword")

    @model_validator(mode="after")
    def passwords_match(self):
        if self.password != self.confirm_password:
            raise ValueError("Passwords do not match")
        return self


# Routes

@router.post("/sign-in")
def sign_in(payload: SignInInput, db=Depends(get_db)):
    user = db["user"].find_one({"email": payload.email.lower().strip(), "isActive": True})
    if not user or not verify_password(payload.password, user.get("passwordHash", "")):
        raise Unauthenticated("Invalid email or password")
    now = utcnow()
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"lastLogin": now}})
    user["lastLogin"] = now
    logger.info("User %s signed in", user["_id"])
    return {
        "message": "Login successful",
        "user": serialize_user(user),
        "accessToken": create_access_token(token_claims(user)),
    }


@router.post("/sign-up", status_code=201)
def sign_up(payload: SignUpInput, db=Depends(get_db)):
    email = payload.email.lower()
    if db["user"].find_one({"email": email}):
        raise Conflict("User with this email already exists")
    user = UserSchema(
        name=payload.name,
        email=email,
        password_hash=hash_password(payload.password),
        role="admin" if email in ADMIN_EMAILS else "user",
        last_login=utcnow(),
    )
    doc = user.to_document()
    try:
        doc["_id"] = db["user"].insert_one(doc).inserted_id
    except DuplicateKeyError:
        raise Conflict("User with this email already exists")
    logger.info("Registered user %s with role %s", doc["_id"], doc["role"])
    return {
        "message": "User created successfully",
        "user": serialize_user(doc),
        "accessToken": create_access_token(token_claims(doc)),
    }


@router.get("/me")
def me(identity: Identity = Depends(get_identity), db=Depends(get_db)):
    user = db["user"].find_one({"_id": to_object_id(identity.id, "user")})
    if not user:
        raise NotFound("User not found")
    return {"user": serialize_user(user)}
