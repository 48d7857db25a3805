"""CLI check that a staging environment is configured for the relational driver.

Usage: python scripts/check_stage_env.py
"""
import os
import pathlib
import sys

# Ensure `backend/` is on sys.path so `simvex` package imports work when running this script directly
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
from run_migrations import mask_database_url  # noqa: E402

REQUIRED_KEYS = ("SIMVEX_REPOSITORY_DRIVER",)
URL_KEYS = ("DATABASE_URL", "POSTGRES_URL")


def _env(key: str) -> str:
    return os.getenv(key, "").strip()


def main() -> int:
    """Print what is missing and return a non-zero exit code on failure."""
    missing = [key for key in REQUIRED_KEYS if not _env(key)]
    url_key = next((key for key in URL_KEYS if _env(key)), None)
    if url_key is None:
        missing.append(" or ".join(URL_KEYS))
    if missing:
        print("Staging environment is missing required variables:", file=sys.stderr)
        for key in missing:
            print(f"- missing: {key}", file=sys.stderr)
        return 1

    driver = _env("SIMVEX_REPOSITORY_DRIVER").lower()
    if driver != "postgres":
        print("SIMVEX_REPOSITORY_DRIVER must be 'postgres' for staging", file=sys.stderr)
        print(f"- current: {driver}", file=sys.stderr)
        return 1

    print("Staging environment check passed.")
    print(f"- SIMVEX_REPOSITORY_DRIVER: {driver}")
    print(f"- {url_key}: {mask_database_url(_env(url_key))}")
    return 0


if __name__ == '__main__':
    sys.exit(main())
