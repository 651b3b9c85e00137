"""Server entry point: controller plus the control API under hypercorn."""

import asyncio
import signal
from pathlib import Path
from typing import Optional, Union

from hypercorn.asyncio import serve
from hypercorn.config import Config as HypercornConfig

from .api.server import create_api_app
from .controller import ProxyController
from .declarations import load_declarations
from .shared.config import Config, get_config
from .shared.logger import log_info
from .shared.python_logger_config import setup_python_logging


async def run_server(config: Config, declarations: Optional[Union[str, Path]] = None) -> None:
    """Start the controller, apply declarations, and serve the API until signalled."""
    log_info("=" * 60, component="main")
    log_info("PROXY ROUTE CONTROLLER STARTUP", component="main")
    log_info("=" * 60, component="main")

    app_config = HypercornConfig()
    app_config.bind = [f"{config.API_HOST}:{config.API_PORT}"]
    app_config.loglevel = config.LOG_LEVEL

    controller = ProxyController.from_config(config)
    await controller.start()

    try:
        if declarations:
            routes = load_declarations(declarations)
            report = await controller.apply_declarations(routes, prune=True)
            log_info(f"Applied {len(routes)} declared routes", component="main",
                     mutations=report.mutations, failed=len(report.failed))

        app = create_api_app(controller)
        log_info(f"API binding to {config.API_HOST}:{config.API_PORT}", component="main")

        shutdown_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, shutdown_event.set)

        await serve(app, app_config, shutdown_trigger=shutdown_event.wait)
    finally:
        log_info("Shutting down proxy route controller...", component="main")
        await controller.stop()


def main(declarations: Optional[Union[str, Path]] = None) -> None:
    """Main entry point."""
    config = get_config()
    setup_python_logging(config.LOG_LEVEL)
    asyncio.run(run_server(config, declarations))
