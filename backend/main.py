import uvicorn

from canary.core.config import settings
from canary.main import app  # noqa: F401

if __name__ == "__main__":
    uvicorn.run(
        "canary.main:app",
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )
