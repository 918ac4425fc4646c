"""UserDirectory — DuckDB-backed user and job-application lookups.

The conversation core does not own users or job applications; it only needs to
map a verified identity subject to an internal user, fetch display names and
resolve the poster/healthcare pair behind a job application.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from ..database import Database
from .schemas import JobApplicationRecord, UserRecord

logger = logging.getLogger(__name__)

_CREATE_USERS = """
CREATE TABLE IF NOT EXISTS users (
    id               VARCHAR PRIMARY KEY,
    identity_subject VARCHAR NOT NULL UNIQUE,
    email            VARCHAR NOT NULL DEFAULT '',
    name             VARCHAR NOT NULL DEFAULT '',
    role             VARCHAR NOT NULL DEFAULT 'individual',
    created_at       TIMESTAMP NOT NULL
)
"""

_CREATE_JOB_APPLICATIONS = """
CREATE TABLE IF NOT EXISTS job_applications (
    id                 VARCHAR PRIMARY KEY,
    job_post_id        VARCHAR NOT NULL,
    job_title          VARCHAR NOT NULL DEFAULT '',
    job_poster_id      VARCHAR NOT NULL,
    healthcare_user_id VARCHAR NOT NULL,
    created_at         TIMESTAMP NOT NULL
)
"""

_USER_COLUMNS = "id, identity_subject, email, name, role"
_APPLICATION_COLUMNS = "id, job_post_id, job_title, job_poster_id, healthcare_user_id"


def _row_to_user(row: tuple) -> UserRecord:
    return UserRecord(
        id=row[0],
        identitySubject=row[1],
        email=row[2],
        name=row[3],
        role=row[4],
    )


def _row_to_application(row: tuple) -> JobApplicationRecord:
    return JobApplicationRecord(
        id=row[0],
        jobPostId=row[1],
        jobTitle=row[2],
        jobPosterId=row[3],
        healthcareUserId=row[4],
    )


class UserDirectory:
    """Read-mostly view over users and job applications."""

    def __init__(self, database: Database) -> None:
        self._db = database
        self._db.execute_script(_CREATE_USERS, _CREATE_JOB_APPLICATIONS)

    # -----------------------------------------------------------------------
    # Users
    # -----------------------------------------------------------------------

    def find_by_subject(self, subject_id: str) -> Optional[UserRecord]:
        row = self._db.fetchone(
            f"SELECT {_USER_COLUMNS} FROM users WHERE identity_subject = ?",
            [subject_id],
        )
        return _row_to_user(row) if row else None

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        row = self._db.fetchone(
            f"SELECT {_USER_COLUMNS} FROM users WHERE id = ?", [user_id]
        )
        return _row_to_user(row) if row else None

    def upsert_user(
        self,
        identity_subject: str,
        email: str = "",
        name: str = "",
        role: str = "individual",
        user_id: Optional[str] = None,
    ) -> UserRecord:
        """Create a user for ``identity_subject`` or update its profile fields."""
        now = datetime.now(timezone.utc).replace(tzinfo=None)
        with self._db.transaction() as conn:
            existing = conn.execute(
                "SELECT id FROM users WHERE identity_subject = ?", [identity_subject]
            ).fetchone()
            if existing:
                conn.execute(
                    "UPDATE users SET email = ?, name = ?, role = ? WHERE id = ?",
                    [email, name, role, existing[0]],
                )
                user_id = existing[0]
            else:
                user_id = user_id or str(uuid.uuid4())
                conn.execute(
                    """
                    INSERT INTO users (id, identity_subject, email, name, role, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    [user_id, identity_subject, email, name, role, now],
                )
        logger.info("[Directory] Upserted user %s (%s)", user_id, role)
        return UserRecord(
            id=user_id, identitySubject=identity_subject, email=email, name=name, role=role
        )

    # -----------------------------------------------------------------------
    # Job applications
    # -----------------------------------------------------------------------

    def get_job_application(self, application_id: str) -> Optional[JobApplicationRecord]:
        row = self._db.fetchone(
            f"SELECT {_APPLICATION_COLUMNS} FROM job_applications WHERE id = ?",
            [application_id],
        )
        return _row_to_application(row) if row else None

    def add_job_application(
        self,
        job_post_id: str,
        job_poster_id: str,
        healthcare_user_id: str,
        job_title: str = "",
        application_id: Optional[str] = None,
    ) -> JobApplicationRecord:
        application_id = application_id or str(uuid.uuid4())
        now = datetime.now(timezone.utc).replace(tzinfo=None)
        with self._db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO job_applications
                  (id, job_post_id, job_title, job_poster_id, healthcare_user_id, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [application_id, job_post_id, job_title, job_poster_id, healthcare_user_id, now],
            )
        return JobApplicationRecord(
            id=application_id,
            jobPostId=job_post_id,
            jobTitle=job_title,
            jobPosterId=job_poster_id,
            healthcareUserId=healthcare_user_id,
        )
