import re
import unittest
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

from psycopg2 import errors as pg_errors
from psycopg2.extras import Json

import db
from config import Settings
from db import Database, OfflineDatabase, open_database
from errors import DatabaseUnavailable, NotFound

CREATED = datetime(2025, 3, 1, 8, 30, tzinfo=timezone.utc)


def mock_connection(fetchone=None, fetchall=None, rowcount=1):
    conn = MagicMock()
    cur = conn.cursor.return_value
    cur.fetchone.return_value = fetchone
    cur.fetchall.return_value = fetchall or []
    cur.rowcount = rowcount
    return conn, cur


def inserted_values(sql, params):
    """Map each column of the INSERT list to the value bound for it."""
    match = re.search(r"INSERT INTO \w+ \(([^)]*)\)\s*VALUES \((.*?)\)\s*ON CONFLICT", sql, re.S)
    columns = [c.strip() for c in match.group(1).split(",")]
    names = re.findall(r"%\((\w+)\)s", match.group(2))
    return dict(zip(columns, (params[n] for n in names)))


def role_flag(sql, params):
    name = re.search(r"CASE WHEN %\((\w+)\)s", sql).group(1)
    return params[name]


class TestOpenDatabase(unittest.TestCase):
    def test_offline_without_url(self):
        database = open_database(Settings(owner_open_id="o"))
        self.assertIsInstance(database, OfflineDatabase)
        self.assertFalse(database.online)
        self.assertEqual(database.owner_open_id, "o")

    def test_online_with_url(self):
        database = open_database(Settings(database_url="postgresql://localhost/stepwise"))
        self.assertIsInstance(database, Database)
        self.assertTrue(database.online)


class TestOfflineDatabase(unittest.TestCase):
    def setUp(self):
        self.database = OfflineDatabase()

    def test_reads_degrade(self):
        with self.assertLogs("db", level="WARNING"):
            self.assertIsNone(self.database.get_user_by_open_id("u"))
        self.assertIsNone(self.database.get_problem_by_id(1))
        self.assertEqual(self.database.list_problems(), [])
        self.assertEqual(self.database.get_progress_stats("u"), db.EMPTY_STATS)

    def test_upsert_user_returns_none(self):
        self.assertIsNone(self.database.upsert_user("u", name="x"))

    def test_upsert_user_requires_open_id(self):
        with self.assertRaises(ValueError):
            self.database.upsert_user("")

    def test_writes_raise(self):
        with self.assertRaises(DatabaseUnavailable):
            self.database.create_problem(user_id=1, steps=[])
        with self.assertRaises(DatabaseUnavailable):
            self.database.record_hint("u", 1)
        with self.assertRaises(DatabaseUnavailable):
            self.database.update_problem_texts(1, "a", "b")


class TestDatabase(unittest.TestCase):
    def setUp(self):
        self.database = Database("postgresql://localhost/stepwise", owner_open_id="owner-1")

    def connect(self, conn):
        patcher = patch("db.psycopg2.connect", return_value=conn)
        connect = patcher.start()
        self.addCleanup(patcher.stop)
        return connect

    def test_connection_failure_returns_none(self):
        patcher = patch("db.psycopg2.connect", side_effect=Exception("refused"))
        patcher.start()
        self.addCleanup(patcher.stop)
        with self.assertLogs("db", level="WARNING"):
            self.assertIsNone(self.database.get_connection())
        with self.assertRaises(DatabaseUnavailable):
            self.database.record_view("u", 1)

    def test_upsert_owner_becomes_admin(self):
        row = (1, "owner-1", "Owner", None, "google.com", "admin", CREATED, CREATED, CREATED)
        conn, cur = mock_connection(fetchone=row)
        self.connect(conn)

        user = self.database.upsert_user("owner-1", name="Owner", login_method="google.com")

        sql, params = cur.execute.call_args.args
        self.assertIn("ON CONFLICT (open_id) DO UPDATE", sql)
        inserted = inserted_values(sql, params)
        self.assertEqual(inserted["open_id"], "owner-1")
        self.assertEqual(inserted["name"], "Owner")
        self.assertIsNone(inserted["email"])
        self.assertEqual(inserted["login_method"], "google.com")
        self.assertEqual(inserted["role"], "admin")
        self.assertIsInstance(inserted["last_signed_in"], datetime)
        self.assertIs(role_flag(sql, params), True)
        conn.commit.assert_called_once()
        conn.close.assert_called_once()
        self.assertEqual(user["role"], "admin")
        self.assertEqual(user["createdAt"], CREATED.isoformat())

    def test_upsert_regular_user_keeps_role(self):
        row = (2, "u", None, None, None, "admin", CREATED, CREATED, CREATED)
        conn, cur = mock_connection(fetchone=row)
        self.connect(conn)

        self.database.upsert_user("u")

        sql, params = cur.execute.call_args.args
        inserted = inserted_values(sql, params)
        self.assertEqual(inserted["role"], "user")
        self.assertIsInstance(inserted["last_signed_in"], datetime)
        self.assertIs(role_flag(sql, params), False)

    def test_upsert_passes_explicit_sign_in_time(self):
        row = (3, "u", None, None, None, "user", CREATED, CREATED, CREATED)
        conn, cur = mock_connection(fetchone=row)
        self.connect(conn)

        self.database.upsert_user("u", last_signed_in=CREATED)

        sql, params = cur.execute.call_args.args
        self.assertEqual(inserted_values(sql, params)["last_signed_in"], CREATED)

    def test_upsert_failure_rolls_back(self):
        conn, cur = mock_connection()
        cur.execute.side_effect = RuntimeError("boom")
        self.connect(conn)
        with self.assertRaises(RuntimeError):
            self.database.upsert_user("u")
        conn.rollback.assert_called_once()
        conn.close.assert_called_once()

    def test_create_problem_stores_json(self):
        conn, cur = mock_connection(fetchone=(7,))
        self.connect(conn)
        steps = [{"id": "step-1", "text": "x"}]

        problem_id = self.database.create_problem(user_id=1, steps=steps, title="t")

        self.assertEqual(problem_id, 7)
        params = cur.execute.call_args.args[1]
        self.assertIsInstance(params[8], Json)
        self.assertEqual(params[8].adapted, steps)
        self.assertIsNone(params[9])
        conn.commit.assert_called_once()

    def test_problem_row_mapping(self):
        row = (3, 1, "t", "文本", "text", "https://p", "problems/p.png", None, None,
               [{"id": "step-1", "text": "x"}], ["AB = AE"], CREATED, CREATED)
        conn, _ = mock_connection(fetchone=row)
        self.connect(conn)

        problem = self.database.get_problem_by_id(3)

        self.assertEqual(problem["problemTextEn"], "text")
        self.assertEqual(problem["steps"], [{"id": "step-1", "text": "x"}])
        self.assertEqual(problem["conditions"], ["AB = AE"])
        self.assertIsNone(problem["solutionImageUrl"])
        self.assertEqual(problem["createdAt"], CREATED.isoformat())

    def test_list_problems_newest_first(self):
        conn, cur = mock_connection(fetchall=[])
        self.connect(conn)
        self.assertEqual(self.database.list_problems(), [])
        self.assertIn("ORDER BY created_at DESC", cur.execute.call_args.args[0])

    def test_update_problem_texts_reports_missing_row(self):
        conn, _ = mock_connection(rowcount=0)
        self.connect(conn)
        self.assertFalse(self.database.update_problem_texts(99, "a", "b"))

    def test_record_hint_is_single_upsert(self):
        conn, cur = mock_connection()
        self.connect(conn)

        self.database.record_hint("u", 5)

        sql, params = cur.execute.call_args.args
        self.assertIn("INSERT INTO user_progress (user_id, problem_id, hint_count)", sql)
        self.assertIn("hint_count = user_progress.hint_count + 1", sql)
        self.assertEqual(params, ("u", 5, 1))
        cur.execute.assert_called_once()
        conn.commit.assert_called_once()

    def test_steps_revealed_takes_maximum(self):
        conn, cur = mock_connection()
        self.connect(conn)

        self.database.record_steps_revealed("u", 5, 4)

        sql, params = cur.execute.call_args.args
        self.assertIn("GREATEST(user_progress.steps_revealed, EXCLUDED.steps_revealed)", sql)
        self.assertEqual(params, ("u", 5, 4))

    def test_solution_view_is_a_flag(self):
        conn, cur = mock_connection()
        self.connect(conn)
        self.database.record_solution_view("u", 5)
        self.assertIn("viewed_solution = 1", cur.execute.call_args.args[0])

    def test_unknown_problem_is_not_found(self):
        conn, cur = mock_connection()
        cur.execute.side_effect = pg_errors.ForeignKeyViolation("violates foreign key constraint")
        self.connect(conn)

        with self.assertRaises(NotFound):
            self.database.record_view("u", 404)
        conn.rollback.assert_called_once()

    def test_progress_stats_mapping(self):
        conn, _ = mock_connection(fetchone=(2, 5, 1, 7, 1))
        self.connect(conn)
        self.assertEqual(self.database.get_progress_stats("u"), {
            "totalProblemsViewed": 2,
            "totalHintsRequested": 5,
            "totalConditionsClicked": 1,
            "totalStepsRevealed": 7,
            "totalSolutionsViewed": 1,
        })

    def test_progress_stats_without_rows(self):
        conn, _ = mock_connection(fetchone=(0, 0, 0, 0, 0))
        self.connect(conn)
        self.assertEqual(self.database.get_progress_stats("nobody"), db.EMPTY_STATS)


if __name__ == "__main__":
    unittest.main()
