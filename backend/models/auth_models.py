"""
Authentication Models for Stackyard
Pydantic models for authentication and user management requests and responses
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from database import ROLE_ADMINISTRATOR, ROLE_REGULAR


class LoginRequest(BaseModel):
    """Login request model with validation"""
    username: str = Field(..., min_length=1, max_length=50)
    password: str = Field(..., min_length=1, max_length=100)


class TokenData(BaseModel):
    """Identity of the caller, resolved from the session cookie"""
    id: int
    username: str
    role: int

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMINISTRATOR


class UserCreatePayload(BaseModel):
    """
    User creation request.

    password may be empty when authentication is delegated to LDAP/OAuth.
    """
    username: str = Field(..., max_length=100)
    password: str = Field('', max_length=100)
    role: int

    @field_validator('username')
    @classmethod
    def validate_username(cls, v: str) -> str:
        if len(v) == 0 or any(c.isspace() for c in v):
            raise ValueError('Invalid username. Must not contain any whitespace')
        return v

    @field_validator('role')
    @classmethod
    def validate_role(cls, v: int) -> int:
        if v not in (ROLE_ADMINISTRATOR, ROLE_REGULAR):
            raise ValueError('Invalid role value. Value must be one of: 1 (administrator) or 2 (regular user)')
        return v


class UserResponse(BaseModel):
    """User as returned by the API (no password hash)"""
    id: int
    username: str
    role: int
    created_at: Optional[datetime] = None
