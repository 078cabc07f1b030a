"""bithedge_oracle.api — Read-only FastAPI surface over the oracle service."""

from bithedge_oracle.api.app import create_app

__all__ = ["create_app"]
