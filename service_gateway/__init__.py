"""Edge gateway service."""
