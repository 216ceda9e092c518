import sqlite3
import time
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from backend.security import issue_session_token, require_session
from database.db import create_tables, get_user_profile, register_user, verify_user_credentials

router = APIRouter()


class RegisterRequest(BaseModel):
    name: str
    email: str
    password: str
    role: Literal["student", "faculty"]
    roll_no: str | None = None
    department: str | None = None
    year: str | None = None
    semester: str | None = None


class LoginRequest(BaseModel):
    email: str
    password: str
    role: Literal["student", "faculty"]


@router.post("/auth/register")
def register(payload: RegisterRequest):
    try:
        user_id = register_user(
            name=payload.name,
            email=payload.email,
            password=payload.password,
            role=payload.role,
            roll_no=payload.roll_no,
            department=payload.department,
            year=payload.year,
            semester=payload.semester,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail="Email or roll number already exists.")

    return {"success": True, "id": user_id, "message": "User registered successfully"}


@router.post("/auth/login")
def login(payload: LoginRequest):
    email = payload.email.strip()
    password = payload.password.strip()
    if not email:
        raise HTTPException(status_code=400, detail="Email is required.")
    if not password:
        raise HTTPException(status_code=400, detail="Password is required.")

    try:
        user = verify_user_credentials(email, password, payload.role)
    except sqlite3.OperationalError:
        # Self-heal when DB schema is missing (e.g., startup/lifespan skipped).
        try:
            create_tables()
            user = verify_user_credentials(email, password, payload.role)
        except sqlite3.OperationalError:
            raise HTTPException(
                status_code=503,
                detail="Authentication service unavailable. Please retry.",
            )

    if not user:
        raise HTTPException(status_code=401, detail="Invalid credentials.")

    token, claims = issue_session_token(user["id"], role=user["role"], name=user["name"])
    now = int(time.time())
    return {
        "access_token": token,
        "token_type": "bearer",
        "user": {
            **user,
            "profile": get_user_profile(user["id"], user["role"]),
        },
        "expires_at": claims["exp"],
        "expires_in": max(0, int(claims["exp"]) - now),
    }


@router.get("/auth/me")
def auth_me(session: dict = Depends(require_session)):
    return {
        "user_id": int(session["sub"]),
        "name": session.get("name"),
        "role": session.get("role"),
        "profile": get_user_profile(int(session["sub"]), session["role"]),
        "expires_at": session.get("exp"),
        "issued_at": session.get("iat"),
    }
