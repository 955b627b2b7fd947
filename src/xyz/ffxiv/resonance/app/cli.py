import json
import logging
import os
from logging.config import dictConfig

from aiohttp import web

from xyz.ffxiv.resonance.app.config import Settings


def configure_logging(debug: bool = False) -> None:
    """Load ``LOGGING_CONFIG_FILE`` as a dictConfig, else log to stderr.

    Without a config file the root level is DEBUG in debug mode and INFO
    otherwise. Request bodies and tokens are never logged at either level.
    """
    logging_config_file = os.getenv("LOGGING_CONFIG_FILE", "")

    if len(logging_config_file) > 0:
        with open(logging_config_file) as fl:
            dictConfig(json.load(fl))
        return

    logging.basicConfig(
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger().setLevel(logging.DEBUG if debug else logging.INFO)


def invoke():
    settings = Settings()  # type: ignore
    configure_logging(settings.debug)

    from xyz.ffxiv.resonance.app.server import start_web_server

    web.run_app(
        start_web_server(settings),
        host=settings.http_host,
        port=settings.http_port,
        print=None,
    )


if __name__ == "__main__":
    invoke()
