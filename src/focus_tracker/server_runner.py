"""Launch the local tracking server."""

from __future__ import annotations

import logging
import threading
import webbrowser
from pathlib import Path
from typing import Optional

import uvicorn

from .config import ClusterSettings, LossSettings, TrackerSettings
from .paths import get_db_path
from .state_machine import BrowserContextProvider, LabelingHook
from .webapp import create_app

logger = logging.getLogger(__name__)


def run_server(
    *,
    host: str = "127.0.0.1",
    port: int = 8765,
    db_path: Optional[Path] = None,
    settings: Optional[TrackerSettings] = None,
    loss_settings: Optional[LossSettings] = None,
    cluster_settings: Optional[ClusterSettings] = None,
    classifier: Optional[LabelingHook] = None,
    browser_context: Optional[BrowserContextProvider] = None,
    open_browser: bool = False,
    log_level: str = "info",
) -> None:
    """Serve the observation endpoints and reports until interrupted.

    The state machine is started and stopped by the app's lifecycle hooks, so
    the open session is closed cleanly on Ctrl+C.

    ``classifier`` is an optional labeling hook run for every new session and
    ``browser_context`` an optional lookup of the frontmost tab.
    """
    resolved_db_path = db_path or get_db_path()
    app = create_app(
        db_path=resolved_db_path,
        settings=settings or TrackerSettings(),
        loss_settings=loss_settings,
        cluster_settings=cluster_settings,
        classifier=classifier,
        browser_context=browser_context,
    )

    docs_url = f"http://{host}:{port}/docs"
    logger.info("Tracking into %s; API docs at %s", resolved_db_path, docs_url)
    if open_browser:
        opener = threading.Timer(1.0, _open_docs, args=(docs_url,))
        opener.daemon = True
        opener.start()

    logging.getLogger("uvicorn.error").setLevel(log_level.upper())
    uvicorn.run(app, host=host, port=port, log_level=log_level)


def _open_docs(url: str) -> None:
    try:
        webbrowser.open(url)
    except Exception:
        logger.exception("Failed to launch browser for %s", url)
