# main.py

import sys
from pathlib import Path

# --- The ONE AND ONLY Path Setup ---
project_root = Path(__file__).resolve().parent
sys.path.insert(0, str(project_root))
# ------------------------------------

from config.app_config import app_config
from common.logger_setup import setup_logger

logger = setup_logger("MainApp", level_str=app_config.LOG_LEVEL)


def main():
    import uvicorn
    logger.info("==================================================")
    logger.info("          Starting PBX Console AMI Relay          ")
    logger.info("==================================================")
    logger.info(f"Launching FastAPI server on http://{app_config.WEB_SERVER_HOST}:{app_config.WEB_SERVER_PORT}")

    uvicorn.run(
        "web_interface.app:app",
        host=app_config.WEB_SERVER_HOST,
        port=app_config.WEB_SERVER_PORT,
        log_level=app_config.LOG_LEVEL.lower()
    )


if __name__ == "__main__":
    main()
