"""
Main entry point: initialize the database, start the scheduler and the API server.
"""
import logging
import sys
import threading
import time
from dotenv import load_dotenv
from uvicorn import Config, Server

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Imported after load_dotenv so DATABASE_URL from .env is honoured
from Database.DatabaseConfig import get_config  # noqa: E402
from Database.init_db import init_db  # noqa: E402
from scheduler import TaskScheduler  # noqa: E402
from api import app as api_app  # noqa: E402


def run_api_server(host: str, port: int):
    """Run FastAPI server in a thread"""
    config = Config(
        app=api_app,
        host=host,
        port=port,
        log_level="info"
    )
    server = Server(config)
    server.run()


if __name__ == "__main__":
    logger.info("Starting Maintenance Supervisor...")

    config = get_config()

    init_db()
    logger.info("✓ Database initialized")

    scheduler = TaskScheduler(config)
    scheduler.start()
    logger.info("✓ Task scheduler started")

    api_thread = threading.Thread(
        target=run_api_server,
        args=(config.api_host, config.api_port),
        daemon=True
    )
    api_thread.start()
    logger.info(f"✓ API server started (http://{config.api_host}:{config.api_port})")

    logger.info("\n" + "=" * 60)
    logger.info("Maintenance Supervisor is running!")
    logger.info("=" * 60)

    try:
        # Keep main thread alive
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Shutting down...")
        scheduler.stop()
        sys.exit(0)
