"""
main.py: server launcher and entry point.

Run this file to start the FitPool server:

    python main.py

External schedulers then call the trigger endpoints, for example:

    curl -H "Authorization: Bearer $SCHEDULER_API_KEY" \
        "http://127.0.0.1:8000/scheduler/unified?run_type=morning"

This file does NOT contain application logic. See app.py for the FastAPI
application, service wiring, and startup sequence.

Direct uvicorn usage:
    uvicorn app:app --reload
"""

from __future__ import annotations

import os

import uvicorn


HOST = os.getenv("FITPOOL_HOST", "127.0.0.1")
PORT = int(os.getenv("FITPOOL_PORT", "8000"))


def main() -> None:
    """Start the FitPool API server."""
    print("=" * 60)
    print("  FitPool: Event Pools & Reminders")
    print("=" * 60)
    print(f"  Server   : http://{HOST}:{PORT}")
    print(f"  API docs : http://{HOST}:{PORT}/docs")
    print("=" * 60)
    print("  Press CTRL+C to stop\n")

    # Start uvicorn: this blocks until CTRL+C
    uvicorn.run(
        "app:app",       # points to app.py → app object
        host=HOST,
        port=PORT,
        reload=os.getenv("FITPOOL_RELOAD", "false").lower() in {"1", "true", "yes"},
        log_level="info",
    )


if __name__ == "__main__":
    main()
