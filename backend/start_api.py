#!/usr/bin/env python3
"""
Deferlink API Startup Script

Loads .env, then starts the deep link server with uvicorn.
"""

import sys

import uvicorn

from deferlink.utils.env import load_env_file


def main():
    """Start the deferlink API server."""
    load_env_file()

    # Settings are read after .env is loaded
    from deferlink.deps import get_settings

    settings = get_settings()

    print("Starting Deferlink API Server...")
    print(f"   Environment: {settings.ENVIRONMENT}")
    print(f"   Public origin: {settings.public_origin}")
    print(f"   Referral store: {settings.DB_PATH}")
    print("")
    print("Documentation will be available at:")
    print(f"   Swagger UI:  http://localhost:{settings.PORT}/docs")
    print(f"   ReDoc:       http://localhost:{settings.PORT}/redoc")
    print("")

    try:
        uvicorn.run(
            "deferlink.main:app",
            host=settings.HOST,
            port=settings.PORT,
            reload=not settings.is_production,
            reload_dirs=["deferlink"],
            proxy_headers=True,
            forwarded_allow_ips="*",
            log_level="info",
        )
    except KeyboardInterrupt:
        print("\nShutting down deferlink API server...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
