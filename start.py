#!/usr/bin/env python3
"""
Storyloom Service Entrypoint

Runs the FastAPI app with uvicorn. Host, port and log level come from
the app config (API_HOST, API_PORT, LOG_LEVEL); PORT overrides the port
when the platform sets it.
"""

import os

import uvicorn

from storyloom.config import config

PORT = int(os.environ.get("PORT", config.API_PORT))

print("=" * 50)
print(f"Storyloom API on {config.API_HOST}:{PORT} ({config.ENVIRONMENT})")
print("=" * 50)

if __name__ == "__main__":
    uvicorn.run(
        "storyloom.api.main:app",
        host=config.API_HOST,
        port=PORT,
        log_level=config.LOG_LEVEL.lower(),
    )
