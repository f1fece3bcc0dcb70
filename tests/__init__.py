import logging
import os

from loguru import logger

# Intercept the configuration pipeline at the root of test discovery.
# This strictly isolates the physical database, ensuring TestClient lifespan
# events or un-mocked sessions operate exclusively in ephemeral memory.
os.environ["SQLITE_DB_PATH"] = ":memory:"
os.environ.setdefault("SECRET_KEY", "test-secret-key")

# Globally mute application logs during testing to prevent terminal noise
# from unhappy-path testing (403s, invalid transitions, etc.)
logger.disable("src")

logging.getLogger("asyncio").setLevel(logging.ERROR)
