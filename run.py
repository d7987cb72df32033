#!/usr/bin/env python3
"""
EMI Engine Entry Point

Starts the FastAPI server with host, port and storage taken from EMI_*
environment variables.
"""

import sys

from emi_engine.api import run_server
from emi_engine.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting EMI Engine...")
    print(f"Storage: {config.database_url}")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server()
    except KeyboardInterrupt:
        print("\nShutting down EMI Engine...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
