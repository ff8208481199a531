"""
Скрипт создания таблицы page_events (если её нет)
"""
import asyncio
import sys
from pathlib import Path

backend_path = Path(__file__).parent
sys.path.insert(0, str(backend_path))

from herenow.database.connection import Base, engine, DATABASE_URL
from herenow.models import PageEvent  # noqa: F401  регистрирует таблицу в metadata


async def create_tables() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    await engine.dispose()


def main() -> None:
    print(f"Creating page_events on {DATABASE_URL.split('@')[-1]}")
    try:
        asyncio.run(create_tables())
    except Exception as e:
        print(f"[ERROR] {e}")
        sys.exit(1)
    print("[OK] page_events ready")


if __name__ == "__main__":
    main()
