#!/usr/bin/env python3
"""
Client Ledger Service Entry Point

Starts the FastAPI server on the configured port (PORT, default 9999).
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from ledger_service.api import run_server
from ledger_service.config import get_config


if __name__ == "__main__":
    config = get_config()
    print(f"Starting Client Ledger Service on {config.host}:{config.port}")

    try:
        run_server()
    except KeyboardInterrupt:
        print("\nShutting down Client Ledger Service...")
