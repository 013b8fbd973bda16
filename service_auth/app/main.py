"""
Auth service for the delivery platform.
"""

from typing import Optional

from shared.base_service import BaseService
from shared.config import AuthServiceConfig

GREETING = "Hello API from auth-service"


class AuthService(BaseService):
    """Auth service implementation."""

    def __init__(self, config: Optional[AuthServiceConfig] = None):
        super().__init__(config or AuthServiceConfig())
        self._setup_auth_routes()

    def _setup_auth_routes(self):
        """Set up auth-specific routes."""

        @self.app.get("/")
        async def root():
            return {"message": GREETING}


def create_app(config: Optional[AuthServiceConfig] = None):
    """Create FastAPI application."""
    service = AuthService(config)
    return service.app


def main():
    service = AuthService()
    service.run()


if __name__ == "__main__":
    main()
