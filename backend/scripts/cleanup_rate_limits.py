"""CLI script to delete rate-limit windows that have already ended.
Usage: python scripts/cleanup_rate_limits.py
Meant to run from cron; the API exposes the same operation at
POST /admin/rate-limits/cleanup.
"""
import sys
import logging
import pathlib
# Ensure `backend/` is on sys.path so `classmate` package imports work when running this script directly
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
from sqlmodel import Session
from classmate.config import settings
from classmate.database import engine
from classmate.utils.rate_limit import DatabaseRateLimiter


def main() -> int:
    with Session(engine) as session:
        removed = DatabaseRateLimiter(session).cleanup_expired()
    print(f'Removed {removed} expired rate limit windows')
    return 0


if __name__ == '__main__':
    logging.basicConfig(level=settings.LOG_LEVEL)
    sys.exit(main())
