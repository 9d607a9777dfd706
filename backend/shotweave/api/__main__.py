"""API server entry point for python -m shotweave.api"""
import uvicorn
from shotweave.config import settings

if __name__ == "__main__":
    uvicorn.run(
        "shotweave.api.app:app",
        host=settings.server.host,
        port=settings.server.port,
        reload=False,
    )
