"""
Re-extract the Chinese and English problem statement for every stored problem.

For each problem that has a problem image, asks the model for
{problemText, problemTextEn} and writes both columns. A failure on one
problem is logged and the batch moves on.

Run (after `pip install -e .`, with DATABASE_URL and GOOGLE_API_KEY set):
  python stepwise-db/update_problem_texts.py
"""
from __future__ import annotations

import logging
import sys

from dotenv import load_dotenv

from config import Settings
from db import open_database
from errors import ApiError
from tutor import Tutor

logger = logging.getLogger("stepwise.update_texts")


def update_problem_texts(database, tutor) -> tuple[int, int]:
    """Returns (updated, failed)."""
    problems = [p for p in database.list_problems() if p.get("problemImageUrl")]
    logger.info("Found %d problems with a problem image", len(problems))

    updated = failed = 0
    for problem in problems:
        pid = problem["id"]
        try:
            texts = tutor.extract_problem_texts(problem["problemImageUrl"])
            database.update_problem_texts(pid, texts["problemText"], texts["problemTextEn"])
        except ApiError as e:
            failed += 1
            logger.error("Problem %s: %s", pid, e.message)
            continue
        except Exception:
            failed += 1
            logger.exception("Problem %s: update failed", pid)
            continue
        updated += 1
        logger.info("Problem %s updated: %s", pid, texts["problemTextEn"][:80])
    return updated, failed


def main() -> int:
    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
    settings = Settings.from_env()
    database = open_database(settings)
    if not database.online:
        logger.error("DATABASE_URL is not set")
        return 1
    updated, failed = update_problem_texts(database, Tutor(settings.gemini_api_key, settings.gemini_model))
    logger.info("Done: %d updated, %d failed", updated, failed)
    return 0 if failed == 0 else 2


if __name__ == "__main__":
    sys.exit(main())
