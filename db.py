"""
Persistence access for users, problems and per-user progress counters.

Every operation opens a short-lived psycopg2 connection and closes it before
returning. ``Database`` talks to Postgres; ``OfflineDatabase`` is what the app
runs on when no DATABASE_URL is configured: reads come back empty, writes raise
``DatabaseUnavailable``. Row dicts use the camelCase keys the API returns.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone

import psycopg2
from psycopg2 import errors as pg_errors
from psycopg2.extras import Json

from config import Settings
from errors import DatabaseUnavailable, NotFound

logger = logging.getLogger(__name__)


USER_COLUMNS = (
    "id, open_id, name, email, login_method, role, created_at, updated_at, last_signed_in"
)

PROBLEM_COLUMNS = (
    "id, user_id, title, problem_text, problem_text_en, problem_image_url, problem_image_key, "
    "solution_image_url, solution_image_key, steps, conditions, created_at, updated_at"
)

# Counter column -> SET expression applied when the (user, problem) row already exists.
PROGRESS_UPDATES = {
    "view_count": "view_count = user_progress.view_count + 1",
    "hint_count": "hint_count = user_progress.hint_count + 1",
    "condition_click_count": "condition_click_count = user_progress.condition_click_count + 1",
    "steps_revealed": "steps_revealed = GREATEST(user_progress.steps_revealed, EXCLUDED.steps_revealed)",
    "viewed_solution": "viewed_solution = 1",
}

EMPTY_STATS = {
    "totalProblemsViewed": 0,
    "totalHintsRequested": 0,
    "totalConditionsClicked": 0,
    "totalStepsRevealed": 0,
    "totalSolutionsViewed": 0,
}


def _iso(value):
    return value.isoformat() if isinstance(value, datetime) else value


def user_from_row(row) -> dict:
    return {
        "id": row[0],
        "openId": row[1],
        "name": row[2],
        "email": row[3],
        "loginMethod": row[4],
        "role": row[5],
        "createdAt": _iso(row[6]),
        "updatedAt": _iso(row[7]),
        "lastSignedIn": _iso(row[8]),
    }


def problem_from_row(row) -> dict:
    return {
        "id": row[0],
        "userId": row[1],
        "title": row[2],
        "problemText": row[3],
        "problemTextEn": row[4],
        "problemImageUrl": row[5],
        "problemImageKey": row[6],
        "solutionImageUrl": row[7],
        "solutionImageKey": row[8],
        "steps": list(row[9] or []),
        "conditions": list(row[10]) if row[10] is not None else None,
        "createdAt": _iso(row[11]),
        "updatedAt": _iso(row[12]),
    }


class Database:
    online = True

    def __init__(self, dsn: str | None, owner_open_id: str | None = None):
        self.dsn = dsn
        self.owner_open_id = owner_open_id

    def get_connection(self):
        try:
            return psycopg2.connect(self.dsn)
        except Exception as e:
            logger.warning("Database connection failed: %s", e)
            return None

    def _write_connection(self, what: str):
        conn = self.get_connection()
        if not conn:
            raise DatabaseUnavailable(f"Cannot {what}: database not available")
        return conn

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def upsert_user(
        self,
        open_id: str,
        name: str | None = None,
        email: str | None = None,
        login_method: str | None = None,
        role: str | None = None,
        last_signed_in: datetime | None = None,
    ) -> dict | None:
        """Insert the user on first login, refresh it on every later one.

        ``role`` is only written when given explicitly or when ``open_id`` is
        the configured owner (who always becomes ``admin``). Returns None
        without a database so callers can fall back to a token-only session.
        """
        if not open_id:
            raise ValueError("User openId is required for upsert")

        conn = self.get_connection()
        if not conn:
            logger.warning("Cannot upsert user: database not available")
            return None

        if role is None and self.owner_open_id and open_id == self.owner_open_id:
            role = "admin"
        set_role = role is not None
        signed_in = last_signed_in or datetime.now(timezone.utc)

        cur = conn.cursor()
        try:
            cur.execute(
                f"""
                INSERT INTO users (open_id, name, email, login_method, role, last_signed_in)
                VALUES (%(open_id)s, %(name)s, %(email)s, %(login_method)s, %(role)s, %(last_signed_in)s)
                ON CONFLICT (open_id) DO UPDATE SET
                  name = COALESCE(EXCLUDED.name, users.name),
                  email = COALESCE(EXCLUDED.email, users.email),
                  login_method = COALESCE(EXCLUDED.login_method, users.login_method),
                  role = CASE WHEN %(set_role)s THEN EXCLUDED.role ELSE users.role END,
                  last_signed_in = EXCLUDED.last_signed_in,
                  updated_at = NOW()
                RETURNING {USER_COLUMNS}
                """,
                {
                    "open_id": open_id,
                    "name": name,
                    "email": email,
                    "login_method": login_method,
                    "role": role or "user",
                    "last_signed_in": signed_in,
                    "set_role": set_role,
                },
            )
            row = cur.fetchone()
            conn.commit()
            return user_from_row(row)
        except Exception:
            conn.rollback()
            logger.exception("Failed to upsert user %s", open_id)
            raise
        finally:
            cur.close()
            conn.close()

    def get_user_by_open_id(self, open_id: str) -> dict | None:
        conn = self.get_connection()
        if not conn:
            logger.warning("Cannot get user: database not available")
            return None
        try:
            cur = conn.cursor()
            cur.execute(f"SELECT {USER_COLUMNS} FROM users WHERE open_id = %s LIMIT 1", (open_id,))
            row = cur.fetchone()
            cur.close()
            return user_from_row(row) if row else None
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Problems
    # ------------------------------------------------------------------

    def create_problem(
        self,
        user_id: int,
        steps: list[dict],
        title: str | None = None,
        problem_text: str | None = None,
        problem_text_en: str | None = None,
        problem_image_url: str | None = None,
        problem_image_key: str | None = None,
        solution_image_url: str | None = None,
        solution_image_key: str | None = None,
        conditions: list[str] | None = None,
    ) -> int:
        conn = self._write_connection("create problem")
        cur = conn.cursor()
        try:
            cur.execute(
                """
                INSERT INTO problems (
                  user_id, title, problem_text, problem_text_en,
                  problem_image_url, problem_image_key, solution_image_url, solution_image_key,
                  steps, conditions
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING id
                """,
                (
                    user_id,
                    title,
                    problem_text,
                    problem_text_en,
                    problem_image_url,
                    problem_image_key,
                    solution_image_url,
                    solution_image_key,
                    Json(steps),
                    Json(conditions) if conditions is not None else None,
                ),
            )
            problem_id = cur.fetchone()[0]
            conn.commit()
            return problem_id
        except Exception:
            conn.rollback()
            raise
        finally:
            cur.close()
            conn.close()

    def get_problem_by_id(self, problem_id: int) -> dict | None:
        conn = self.get_connection()
        if not conn:
            return None
        try:
            cur = conn.cursor()
            cur.execute(f"SELECT {PROBLEM_COLUMNS} FROM problems WHERE id = %s LIMIT 1", (problem_id,))
            row = cur.fetchone()
            cur.close()
            return problem_from_row(row) if row else None
        finally:
            conn.close()

    def list_problems(self) -> list[dict]:
        """All problems, newest first. Problems are public, so there is no owner filter."""
        conn = self.get_connection()
        if not conn:
            return []
        try:
            cur = conn.cursor()
            cur.execute(f"SELECT {PROBLEM_COLUMNS} FROM problems ORDER BY created_at DESC, id DESC")
            rows = cur.fetchall()
            cur.close()
            return [problem_from_row(r) for r in rows]
        finally:
            conn.close()

    def update_problem_texts(self, problem_id: int, problem_text: str, problem_text_en: str) -> bool:
        conn = self._write_connection("update problem texts")
        cur = conn.cursor()
        try:
            cur.execute(
                """
                UPDATE problems
                SET problem_text = %s, problem_text_en = %s, updated_at = NOW()
                WHERE id = %s
                """,
                (problem_text, problem_text_en, problem_id),
            )
            updated = cur.rowcount > 0
            conn.commit()
            return updated
        except Exception:
            conn.rollback()
            raise
        finally:
            cur.close()
            conn.close()

    # ------------------------------------------------------------------
    # Progress counters
    # ------------------------------------------------------------------

    def _upsert_progress(self, open_id: str, problem_id: int, column: str, value: int) -> None:
        # Creates the row on first use; increments happen in the same statement.
        update = PROGRESS_UPDATES[column]
        conn = self._write_connection("record progress")
        cur = conn.cursor()
        try:
            cur.execute(
                f"""
                INSERT INTO user_progress (user_id, problem_id, {column})
                VALUES (%s, %s, %s)
                ON CONFLICT (user_id, problem_id) DO UPDATE
                SET {update}, last_viewed_at = NOW()
                """,
                (open_id, problem_id, value),
            )
            conn.commit()
        except pg_errors.ForeignKeyViolation:
            conn.rollback()
            raise NotFound(f"Problem {problem_id} not found")
        except Exception:
            conn.rollback()
            raise
        finally:
            cur.close()
            conn.close()

    def record_view(self, open_id: str, problem_id: int) -> None:
        self._upsert_progress(open_id, problem_id, "view_count", 1)

    def record_hint(self, open_id: str, problem_id: int) -> None:
        self._upsert_progress(open_id, problem_id, "hint_count", 1)

    def record_condition_click(self, open_id: str, problem_id: int) -> None:
        self._upsert_progress(open_id, problem_id, "condition_click_count", 1)

    def record_steps_revealed(self, open_id: str, problem_id: int, count: int) -> None:
        self._upsert_progress(open_id, problem_id, "steps_revealed", count)

    def record_solution_view(self, open_id: str, problem_id: int) -> None:
        self._upsert_progress(open_id, problem_id, "viewed_solution", 1)

    def get_progress_stats(self, open_id: str) -> dict:
        conn = self.get_connection()
        if not conn:
            return dict(EMPTY_STATS)
        try:
            cur = conn.cursor()
            cur.execute(
                """
                SELECT
                  COUNT(*),
                  COALESCE(SUM(hint_count), 0),
                  COALESCE(SUM(condition_click_count), 0),
                  COALESCE(SUM(steps_revealed), 0),
                  COALESCE(SUM(viewed_solution), 0)
                FROM user_progress
                WHERE user_id = %s
                """,
                (open_id,),
            )
            row = cur.fetchone()
            cur.close()
        finally:
            conn.close()
        if not row:
            return dict(EMPTY_STATS)
        return {
            "totalProblemsViewed": int(row[0] or 0),
            "totalHintsRequested": int(row[1] or 0),
            "totalConditionsClicked": int(row[2] or 0),
            "totalStepsRevealed": int(row[3] or 0),
            "totalSolutionsViewed": int(row[4] or 0),
        }


class OfflineDatabase(Database):
    """Stand-in used when DATABASE_URL is not set."""

    online = False

    def __init__(self, owner_open_id: str | None = None):
        super().__init__(None, owner_open_id)

    def get_connection(self):
        logger.warning("Database not configured (DATABASE_URL is unset)")
        return None


def open_database(settings: Settings) -> Database:
    if not settings.database_url:
        return OfflineDatabase(settings.owner_open_id)
    return Database(settings.database_url, settings.owner_open_id)
