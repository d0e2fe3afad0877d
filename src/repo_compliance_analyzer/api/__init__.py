"""FastAPI REST API for the Repository Compliance Analyzer."""

from typing import Optional

from .app import create_app


def main(host: Optional[str] = None, port: Optional[int] = None, reload: bool = False):
    """Run the API server."""
    import uvicorn

    from ..core.config import get_settings

    settings = get_settings()
    uvicorn.run(
        "repo_compliance_analyzer.api.app:create_app",
        factory=True,
        host=host or settings.api.host,
        port=port or settings.api.port,
        reload=reload,
    )


__all__ = ["create_app", "main"]
