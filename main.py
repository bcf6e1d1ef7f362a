"""
Entry point for the subtitle capture service.

Run this file directly to start the FastAPI server:
    python main.py
    python -m main

Or use uvicorn directly:
    uvicorn subcapture.main:app --reload --host 0.0.0.0 --port 8000
"""

import uvicorn

from subcapture.config import settings


def main() -> None:
    """
    Start the uvicorn server.

    Server configuration can be overridden via environment variables:
    - HOST: Server host (default: 0.0.0.0)
    - PORT: Server port (default: 8000)
    - SUBCAPTURE_STORAGE_BACKEND: sqlite, redis or memory
    - SUBCAPTURE_SUBTITLE_TTL_DAYS: Lifetime of durable subtitle entries
    """
    print("=" * 60)
    print("Subtitle Capture Service")
    print("=" * 60)
    print(f"Starting server on http://{settings.host}:{settings.port}")
    print(f"Storage backend: {settings.storage_backend}")
    print("=" * 60)

    uvicorn.run(
        "subcapture.main:app",
        host=settings.host,
        port=settings.port,
        reload=True,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
