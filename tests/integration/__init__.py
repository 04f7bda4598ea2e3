"""
Integration tests for the ttv-analytics service.

These tests use:
- A throwaway SQLite database per test (or TEST_DATABASE_URL for Postgres)
- The FastAPI app over httpx's ASGI transport
- An in-memory Twitch client (no network)
"""
