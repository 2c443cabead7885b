"""
Entry point for running the control plane HTTP service.

Usage:
    python -m control_plane

Starts the FastAPI server on http://0.0.0.0:8000 (VOICENET_HOST / VOICENET_PORT
override the bind address).
"""
import os

import uvicorn
from logging_setup import setup_logging

if __name__ == "__main__":
    setup_logging(level=os.getenv("VOICENET_LOG_LEVEL", "INFO"), use_json=True)

    uvicorn.run(
        "control_plane.webhook_server:app",
        host=os.getenv("VOICENET_HOST", "0.0.0.0"),
        port=int(os.getenv("VOICENET_PORT", "8000")),
        log_level="info",
    )
