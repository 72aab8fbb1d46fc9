#!/usr/bin/env python3
"""Run the codsync API locally with auto-reload.

    cd backend && python start_api.py

Production runs `uvicorn codsync.main:app` without reload.
"""

import os

import uvicorn


def main():
    port = int(os.getenv("PORT", "8000"))
    print(f"codsync API on http://localhost:{port} (docs at /docs)")
    uvicorn.run(
        "codsync.main:app",
        host="0.0.0.0",
        port=port,
        reload=True,
        reload_dirs=["codsync"],
        log_level="info",
    )


if __name__ == "__main__":
    main()
