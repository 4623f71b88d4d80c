"""
Random Image Server test suite

Structure:
- unit/: cache backends, state and locking, dispatch, ingestion, config, logging
- integration/: the HTTP app end to end through FastAPI's TestClient
"""
