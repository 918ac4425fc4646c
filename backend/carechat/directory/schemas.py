"""Pydantic schemas for directory records."""
from typing import Literal

from pydantic import BaseModel


UserRole = Literal["individual", "organization", "healthcare", "admin"]


class UserRecord(BaseModel):
    """Internal user mapped from an identity-provider subject."""
    id: str
    identitySubject: str
    email: str = ""
    name: str = ""
    role: UserRole = "individual"

    @property
    def display_name(self) -> str:
        return self.name or self.role


class JobApplicationRecord(BaseModel):
    """A healthcare user's application to a job post."""
    id: str
    jobPostId: str
    jobTitle: str = ""
    jobPosterId: str
    healthcareUserId: str
