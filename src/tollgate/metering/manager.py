"""Lifecycle manager for the metering proxy."""
from __future__ import annotations

import threading
from dataclasses import replace

from tollgate.core.config import ProxyConfig
from tollgate.metering.ledger import Ledger
from tollgate.metering.proxy import ProxyApp, create_proxy_server
from tollgate.metering.topup import ChargeFn


class MeteringManager:
    """Start/stop the metering proxy on a background thread."""

    def __init__(self, ledger: Ledger, charge: ChargeFn | None = None) -> None:
        self.ledger = ledger
        self._charge = charge
        self._server = None
        self._thread: threading.Thread | None = None
        self._port: int | None = None

    def start(self, config: ProxyConfig | None = None, port: int = 0) -> str:
        """Start proxy in background thread, return local URL like 'http://127.0.0.1:PORT'."""
        if self._server is not None:
            raise RuntimeError("Metering proxy already running")
        config = replace(config or ProxyConfig(), port=port)
        self._server = create_proxy_server(config, self.ledger, charge=self._charge)
        self._port = self._server.server_address[1]
        self._thread = threading.Thread(
            target=self._server.serve_forever,
            daemon=True,
            name="metering-proxy",
        )
        self._thread.start()
        return f"http://{config.host}:{self._port}"

    def stop(self) -> None:
        """Shutdown proxy server."""
        if self._server is not None:
            self._server.shutdown()
            self._server.server_close()
            self._server.app.close()
            self._server = None
            self._thread = None
            self._port = None

    @property
    def app(self) -> ProxyApp | None:
        return self._server.app if self._server is not None else None

    @property
    def is_running(self) -> bool:
        return self._server is not None
