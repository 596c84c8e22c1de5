"""
Move Dispatch Backend
=====================
Entry point. Run with: uvicorn main:app --reload

Set STORAGE_BACKEND=memory to try the API without PostgreSQL (development
only; the in-memory store scans every move on reads).
"""

import uvicorn

from src.api.app import create_app
from src.config import settings

app = create_app()

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level=settings.log_level.lower(),
    )
