#!/usr/bin/env python3
"""
Access Gate Entry Point

Starts the FastAPI server with the access gate and its expiry sweep scheduler.
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from access_gate.api import run_server
from access_gate.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting Access Gate...")
    print(f"Storage: {config.database_url}")
    print(f"Expiry sweep: daily at {config.sweep_hour:02d}:{config.sweep_minute:02d} UTC")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server(debug=False)
    except KeyboardInterrupt:
        print("\nShutting down Access Gate...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
