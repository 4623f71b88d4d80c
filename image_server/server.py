from __future__ import annotations

import argparse
import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, List, Optional

import requests
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from common.logging_setup import get_logger, setup_logging
from image_server import __version__
from image_server.config import Config, ConfigError
from image_server.dispatch import ImageNotFound, random_image, sequential_image
from image_server.ingest import populate_cache
from image_server.state import ServerState

log = get_logger("image_server")

WELCOME_TEXT = "Welcome to the Random Image Server!"
DEFAULT_CONFIG_PATH = "config.yaml"


class EmptyCacheError(RuntimeError):
    """Ingestion finished with nothing to serve."""


def _not_found() -> PlainTextResponse:
    return PlainTextResponse("Not Found", status_code=404)


def create_app(
    config: Config,
    state: Optional[ServerState] = None,
    session: Optional[requests.Session] = None,
) -> FastAPI:
    """
    Build the FastAPI app.

    On startup the configured sources are ingested into `state` (a fresh one
    built from `config` unless given); if the cache is still empty the app
    refuses to start. On shutdown the cache backend is closed.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        st = app.state.images if app.state.images is not None else ServerState.from_config(config)
        app.state.images = st
        try:
            await populate_cache(
                st,
                config.server.sources,
                session=session,
                timeout=config.server.fetch_timeout,
            )
            if st.size() == 0:
                log.error("No images found in cache, please check your configuration")
                raise EmptyCacheError("No images found in cache, please check your configuration")
            log.info("Serving %d image(s) from %s", st.size(), type(st.cache).__name__)
            yield
        finally:
            st.close()

    app = FastAPI(
        title="Random Image Server",
        version=__version__,
        lifespan=lifespan,
        redirect_slashes=False,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.images = state

    @app.exception_handler(StarletteHTTPException)
    async def plain_text_errors(request: Request, exc: StarletteHTTPException) -> PlainTextResponse:
        return PlainTextResponse(str(exc.detail), status_code=exc.status_code, headers=exc.headers)

    @app.get("/", response_class=PlainTextResponse)
    async def root() -> str:
        return WELCOME_TEXT

    @app.get("/health", response_class=PlainTextResponse)
    async def health() -> str:
        return "OK"

    @app.get("/random")
    async def serve_random(request: Request) -> Response:
        try:
            image = await random_image(request.app.state.images)
        except ImageNotFound as e:
            log.error("Failed to get random image: %s", e)
            return _not_found()
        return Response(content=image.data, media_type=image.content_type)

    @app.get("/sequential")
    async def serve_sequential(request: Request) -> Response:
        try:
            image = await sequential_image(request.app.state.images)
        except ImageNotFound as e:
            log.error("Failed to get sequential image: %s", e)
            return _not_found()
        return Response(content=image.data, media_type=image.content_type)

    return app


def load_config(path: Optional[str]) -> Config:
    """
    Config file (if any) overlaid with the environment.
    A missing default config file falls back to defaults; an explicitly
    named one must exist.
    """
    if path is None:
        try:
            config = Config.from_file(DEFAULT_CONFIG_PATH)
        except ConfigError as e:
            log.warning("Could not load %s (%s), using defaults", DEFAULT_CONFIG_PATH, e)
            config = Config()
    else:
        if Path(path).suffix.lower() not in (".yaml", ".yml"):
            raise ConfigError("Config file must be a .yaml or .yml file")
        config = Config.from_file(path)
    return config.with_env()


def main(argv: Optional[List[str]] = None) -> None:
    ap = argparse.ArgumentParser(
        prog="random-image-server",
        description="Serve images at random or in round-robin order over HTTP",
    )
    ap.add_argument("config", nargs="?", default=None, help=f"YAML config file (default: {DEFAULT_CONFIG_PATH})")
    args = ap.parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        log.error("Invalid configuration: %s", e)
        sys.exit(2)

    setup_logging(config.server.log_level, force=True)
    log.debug("Configuration: %s", config)

    app = create_app(config)
    log.info("Server running on http://%s:%d", config.server.host, config.server.port)
    uvicorn.run(
        app,
        host=config.server.host,
        port=config.server.port,
        log_config=None,
        log_level=logging.getLevelName(logging.getLogger().level).lower(),
        timeout_graceful_shutdown=config.server.shutdown_timeout,
    )


# -------- local dev entrypoint --------
if __name__ == "__main__":
    main()
