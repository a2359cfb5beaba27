#!/usr/bin/env python3
"""
Session store initialization script for Canvas Zoom Archiver.
This script creates the SQLite tables that hold captured sessions and listings.
"""

import asyncio
import sys
import os

# Add the src directory to the Python path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), 'src'))

from canvas_zoom_archiver.config.settings import settings
from canvas_zoom_archiver.database.session_store import SessionStore
from canvas_zoom_archiver.exceptions import StorageError


async def main():
    """Initialize the session store with the latest schema."""
    print(f"Initializing session store at {settings.effective_database_url} ...")
    store = SessionStore()
    try:
        await store.initialize()
        print("✅ Session store initialized successfully!")
    except StorageError as e:
        print(f"❌ Error initializing session store: {e}")
        return 1
    finally:
        await store.dispose()
    return 0


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
