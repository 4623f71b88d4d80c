"""
Random Image Server

- Ingests images from URLs, files and directory trees into a cache backend
  (in memory, or spooled to disk with integrity checks)
- Serves /random (uniform choice) and /sequential (round-robin) image bytes
- Also serves / (welcome text) and /health
"""
__version__ = "0.2.0"
