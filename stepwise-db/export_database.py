"""
Export every problem so it can be moved to another deployment.

Writes three files into the output directory:
  exported-data.json   all problems (steps/conditions included)
  image-urls.txt       one image URL per line, input for download_images.py
  import-problems.sql  INSERT statements that replay the problems into a
                       database created by init_postgres.py

The SQL assigns every problem to the first admin of the target database,
so sign in there once as the owner before running it.

Run (after `pip install -e .`, with DATABASE_URL set):
  python stepwise-db/export_database.py [--out stepwise-db/export]
  psql "$NEW_DATABASE_URL" -f stepwise-db/export/import-problems.sql
"""
from __future__ import annotations

import argparse
import json
import logging
import pathlib
import sys
from datetime import datetime, timezone

from dotenv import load_dotenv

from config import Settings
from db import open_database

logger = logging.getLogger("stepwise.export")

# camelCase export key -> problems column
IMPORT_COLUMNS = (
    ("id", "id"),
    ("title", "title"),
    ("problemText", "problem_text"),
    ("problemTextEn", "problem_text_en"),
    ("problemImageUrl", "problem_image_url"),
    ("problemImageKey", "problem_image_key"),
    ("solutionImageUrl", "solution_image_url"),
    ("solutionImageKey", "solution_image_key"),
    ("steps", "steps"),
    ("conditions", "conditions"),
    ("createdAt", "created_at"),
    ("updatedAt", "updated_at"),
)
JSONB_FIELDS = {"steps", "conditions"}
OWNER_SUBQUERY = "(SELECT id FROM users WHERE role = 'admin' ORDER BY id LIMIT 1)"


def collect_image_urls(problems: list[dict]) -> list[str]:
    urls = []
    for problem in problems:
        for field in ("problemImageUrl", "solutionImageUrl"):
            if problem.get(field):
                urls.append(problem[field])
    return urls


def build_export(problems: list[dict]) -> dict:
    return {
        "exportDate": datetime.now(timezone.utc).isoformat(),
        "totalProblems": len(problems),
        "problems": problems,
    }


def sql_literal(value, jsonb: bool = False) -> str:
    """Render a value as a Postgres literal (standard_conforming_strings on)."""
    if value is None:
        return "NULL"
    if jsonb:
        value = json.dumps(value, ensure_ascii=False)
    elif isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    elif isinstance(value, int):
        return str(value)
    elif isinstance(value, datetime):
        value = value.isoformat()
    quoted = "'" + str(value).replace("'", "''") + "'"
    return quoted + "::jsonb" if jsonb else quoted


def build_import_sql(problems: list[dict]) -> str:
    columns = ", ".join(["user_id"] + [col for _, col in IMPORT_COLUMNS])
    statements = []
    for problem in sorted(problems, key=lambda p: p["id"]):
        values = [OWNER_SUBQUERY] + [
            sql_literal(problem.get(key), jsonb=key in JSONB_FIELDS) for key, _ in IMPORT_COLUMNS
        ]
        statements.append(f"INSERT INTO problems ({columns}) VALUES (\n  " + ",\n  ".join(values) + "\n);")
    if statements:
        # ids were inserted explicitly; move the sequence past them
        statements.append("SELECT setval('problems_id_seq', (SELECT MAX(id) FROM problems));")
    return "BEGIN;\n\n" + "\n\n".join(statements) + "\n\nCOMMIT;\n"


def export_database(database, out_dir: pathlib.Path) -> tuple[pathlib.Path, pathlib.Path, pathlib.Path]:
    problems = database.list_problems()
    logger.info("Found %d problems", len(problems))

    out_dir.mkdir(parents=True, exist_ok=True)
    data_path = out_dir / "exported-data.json"
    data_path.write_text(json.dumps(build_export(problems), ensure_ascii=False, indent=2), encoding="utf-8")
    logger.info("Problems written to %s", data_path)

    urls = collect_image_urls(problems)
    urls_path = out_dir / "image-urls.txt"
    urls_path.write_text("\n".join(urls), encoding="utf-8")
    logger.info("%d image URLs written to %s", len(urls), urls_path)

    sql_path = out_dir / "import-problems.sql"
    sql_path.write_text(build_import_sql(problems), encoding="utf-8")
    logger.info("Import script written to %s", sql_path)
    return data_path, urls_path, sql_path


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Export all problems to JSON and SQL.")
    parser.add_argument("--out", default="stepwise-db/export", help="Output directory")
    args = parser.parse_args(argv)

    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
    database = open_database(Settings.from_env())
    if not database.online:
        logger.error("DATABASE_URL is not set")
        return 1
    export_database(database, pathlib.Path(args.out))
    return 0


if __name__ == "__main__":
    sys.exit(main())
