"""
Entry point for the deckforge service.

Run with:
    uvicorn deckforge.api.main:app --reload --port 8100
    python main.py
"""
import uvicorn

from config import get_settings
from deckforge.logging_config import configure_logging

settings = get_settings()

if __name__ == "__main__":
    configure_logging(settings)
    uvicorn.run(
        "deckforge.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
