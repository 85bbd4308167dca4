"""
RouteGuard Backend — Login Schemas
====================================

What:  Body model for POST /users/login and the token payload it returns.
How:   Length and character checks run before any database lookup, so a
       malformed credential never costs a bcrypt round.
"""

import re

from pydantic import BaseModel, Field, field_validator

_USERNAME_RE = re.compile(r"^[A-Za-z0-9-]+$")


class LoginRequest(BaseModel):
    username: str = Field(min_length=3, max_length=25)
    # bcrypt only reads the first 72 bytes
    password: str = Field(min_length=8, max_length=72)

    @field_validator("username")
    @classmethod
    def validate_username(cls, v: str) -> str:
        if not _USERNAME_RE.match(v):
            raise ValueError("Username may contain only letters, digits and hyphens")
        return v

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        if any(ch.isspace() for ch in v):
            raise ValueError("Password must not contain whitespace")
        return v


class TokenResponse(BaseModel):
    token: str = Field(description="Signed bearer token (JWT)")
    expires: int = Field(description="Expiry as epoch seconds")
