"""
Shared building blocks for the image server.

- types: CacheKey variants (ImageUrl, ImagePath) and CacheValue
- logging_setup: JSON log formatting for every process entry point
"""
