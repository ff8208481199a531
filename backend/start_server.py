"""
Единая точка запуска backend.

Важно: psycopg3/async драйверы на Windows требуют WindowsSelectorEventLoopPolicy.

Запуск:
  python backend/start_server.py
"""

import asyncio
import logging
import os
import sys
from pathlib import Path

# Директория backend в sys.path, чтобы пакет herenow был доступен без установки
backend_dir = Path(__file__).parent.absolute()
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

if hasattr(asyncio, "WindowsSelectorEventLoopPolicy"):
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

import uvicorn


def main() -> None:
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(level=log_level, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    host = os.getenv("BACKEND_HOST", "127.0.0.1")
    port = int(os.getenv("PORT", "3210"))
    logging.getLogger(__name__).info(f"here/now API on http://{host}:{port}, widget at /widget.js")
    uvicorn.run("herenow.main:app", host=host, port=port, reload=False, log_level=log_level.lower())


if __name__ == "__main__":
    main()
