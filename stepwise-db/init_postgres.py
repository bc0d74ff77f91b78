"""
Initialize the Postgres database `stepwise` and create its tables.
- Reads connection settings from env: POSTGRES_HOST/PORT/USER/PASSWORD/DB
- Connects to maintenance DB `postgres` to create `stepwise` if missing
- Creates users, problems, user_progress (idempotent)
- With --reset, drops those three tables first

Run:
  python stepwise-db/init_postgres.py [--reset]
"""
from __future__ import annotations
import argparse
import os
import sys
import psycopg2
from psycopg2.extensions import ISOLATION_LEVEL_AUTOCOMMIT

PG_HOST = os.getenv("POSTGRES_HOST", "localhost")
PG_USER = os.getenv("POSTGRES_USER", "postgres")
PG_PASSWORD = os.getenv("POSTGRES_PASSWORD", "postgres")
PG_DB_NAME = os.getenv("POSTGRES_DB", "stepwise")
PG_PORT = int(os.getenv("POSTGRES_PORT", "5432"))

TABLES = ("user_progress", "problems", "users")


def connect(dbname: str):
    return psycopg2.connect(
        host=PG_HOST,
        port=PG_PORT,
        user=PG_USER,
        password=PG_PASSWORD,
        database=dbname,
    )


def ensure_database_exists():
    # Connect to maintenance DB to check/create target database
    conn = connect("postgres")
    conn.set_isolation_level(ISOLATION_LEVEL_AUTOCOMMIT)
    cur = conn.cursor()
    try:
        cur.execute("SELECT 1 FROM pg_database WHERE datname=%s", (PG_DB_NAME,))
        exists = cur.fetchone() is not None
        if not exists:
            print(f"Creating database '{PG_DB_NAME}' ...")
            cur.execute(f"CREATE DATABASE {PG_DB_NAME};")
        else:
            print(f"Database '{PG_DB_NAME}' already exists.")
    finally:
        cur.close()
        conn.close()


def drop_tables():
    conn = connect(PG_DB_NAME)
    cur = conn.cursor()
    try:
        for table in TABLES:
            cur.execute(f"DROP TABLE IF EXISTS {table} CASCADE;")
        conn.commit()
        print("Dropped tables:", ", ".join(TABLES))
    except Exception as e:
        conn.rollback()
        print("Failed to drop tables:", e)
        sys.exit(1)
    finally:
        cur.close()
        conn.close()


def create_tables():
    conn = connect(PG_DB_NAME)
    cur = conn.cursor()
    try:
        # USERS
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS users (
                id SERIAL PRIMARY KEY,
                open_id TEXT UNIQUE NOT NULL,
                name TEXT,
                email TEXT,
                login_method TEXT,
                role TEXT NOT NULL DEFAULT 'user' CHECK (role IN ('user', 'admin')),
                created_at TIMESTAMP NOT NULL DEFAULT NOW(),
                updated_at TIMESTAMP NOT NULL DEFAULT NOW(),
                last_signed_in TIMESTAMP NOT NULL DEFAULT NOW()
            );
            """
        )

        # PROBLEMS (steps: [{id, text}], conditions: [text])
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS problems (
                id SERIAL PRIMARY KEY,
                user_id INTEGER NOT NULL,
                title TEXT,
                problem_text TEXT,
                problem_text_en TEXT,
                problem_image_url TEXT,
                problem_image_key TEXT,
                solution_image_url TEXT,
                solution_image_key TEXT,
                steps JSONB NOT NULL DEFAULT '[]'::jsonb,
                conditions JSONB,
                created_at TIMESTAMP NOT NULL DEFAULT NOW(),
                updated_at TIMESTAMP NOT NULL DEFAULT NOW(),
                FOREIGN KEY (user_id) REFERENCES users(id)
            );
            """
        )

        # USER PROGRESS (user_id is the external open_id)
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS user_progress (
                id SERIAL PRIMARY KEY,
                user_id TEXT NOT NULL,
                problem_id INTEGER NOT NULL,
                view_count INTEGER NOT NULL DEFAULT 0,
                hint_count INTEGER NOT NULL DEFAULT 0,
                condition_click_count INTEGER NOT NULL DEFAULT 0,
                steps_revealed INTEGER NOT NULL DEFAULT 0,
                viewed_solution INTEGER NOT NULL DEFAULT 0,
                first_viewed_at TIMESTAMP NOT NULL DEFAULT NOW(),
                last_viewed_at TIMESTAMP NOT NULL DEFAULT NOW(),
                FOREIGN KEY (problem_id) REFERENCES problems(id) ON DELETE CASCADE,
                UNIQUE (user_id, problem_id)
            );
            """
        )

        cur.execute("CREATE INDEX IF NOT EXISTS problems_created_at_idx ON problems (created_at DESC);")
        conn.commit()
        print("Postgres database initialized successfully. Tables: " + ", ".join(reversed(TABLES)))
    except Exception as e:
        conn.rollback()
        print("Initialization failed:", e)
        sys.exit(1)
    finally:
        cur.close()
        conn.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Create the Stepwise database and tables.")
    parser.add_argument("--reset", action="store_true", help="Drop existing tables first")
    args = parser.parse_args()

    ensure_database_exists()
    if args.reset:
        drop_tables()
    create_tables()
