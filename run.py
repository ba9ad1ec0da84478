# run.py
import logging
import os
import sys

import uvicorn

sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from bds_manager.core.config import PORT, HOST

if __name__ == "__main__":
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    print(f"===========================================================")
    print(f" BEDROCK SERVER BACKUP MANAGER STARTING...")
    print(f" API URL: http://{HOST}:{PORT}")
    print(f"===========================================================")

    # "bds_manager:create_app" refers to the create_app factory in bds_manager/__init__.py
    uvicorn.run(
        "bds_manager:create_app",
        host=HOST,
        port=PORT,
        factory=True
    )
