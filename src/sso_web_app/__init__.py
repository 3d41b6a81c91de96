"""
SSO Web App
Sign-in through Microsoft 365 and GitHub OAuth2 with server-side sessions

All logging goes to stderr; authentication events are emitted as JSON on
the ``sso_web_app.audit`` logger.
"""

import logging
import sys

logger = logging.getLogger(__name__)

__version__ = "0.1.0"

__all__ = ["create_app", "main"]


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging to stderr."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )


def create_app(*args, **kwargs):
    """Create the Starlette application (see ``sso_web_app.app.create_app``)."""
    from .app import create_app as _create_app

    return _create_app(*args, **kwargs)


def main() -> None:
    """Load configuration from the environment and serve the app with uvicorn."""
    import uvicorn

    from .config import load_config

    app_config = load_config()
    configure_logging(app_config.log_level)

    problems = app_config.validate()
    if app_config.is_production and problems:
        for problem in problems:
            logger.error(f"Configuration problem: {problem}")
        sys.exit(1)

    logger.info(f"Starting SSO web app on {app_config.host}:{app_config.port}")
    try:
        app = create_app(app_config)
        server_config = uvicorn.Config(
            app=app,
            host=app_config.host,
            port=app_config.port,
            log_level="warning",  # Reduce uvicorn logging, let our logger handle it
            access_log=False,
        )
        uvicorn.Server(server_config).run()
    except KeyboardInterrupt:
        logger.info("Server shutdown requested")
    except Exception:
        logger.exception("Server error")
        raise
