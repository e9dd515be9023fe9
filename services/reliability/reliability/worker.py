"""Worker process: job workers, scheduler and the status API in one event loop."""
import logging

import uvicorn

from .config import Settings
from .logging_config import configure_logging
from .main import create_app
from .runtime import Runtime


def main():
    configure_logging()
    log = logging.getLogger("worker")
    settings = Settings.from_env()

    runtime = Runtime(settings)
    runtime.install_default_handlers()
    app = create_app(runtime)

    log.info(
        "starting %d worker(s) on %s store, status API on %s:%d",
        settings.worker_concurrency,
        settings.store_backend,
        settings.http_host,
        settings.http_port,
    )
    uvicorn.run(app, host=settings.http_host, port=settings.http_port, log_config=None)


if __name__ == "__main__":
    main()
