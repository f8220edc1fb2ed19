"""Virtual display and VNC server for headed browsers on machines without a screen."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from dataclasses import dataclass
from typing import Optional

from pyvirtualdisplay import Display

from ..config import BrowserConfig

LOGGER = logging.getLogger(__name__)


@dataclass
class VNCConnectionInfo:
    host: str
    port: int
    display: str

    def describe(self) -> str:
        return f"VNC available at {self.host}:{self.port} (display {self.display})"


class VirtualDisplay:
    """Starts an Xvfb display for spawned browsers and optionally shares it over VNC.

    Browsers launched while the display runs inherit its ``DISPLAY``.
    """

    def __init__(
        self,
        width: int = 1280,
        height: int = 720,
        host: str = "127.0.0.1",
        port: Optional[int] = None,
    ) -> None:
        self._width = width
        self._height = height
        self._host = host
        self._port = port
        self._display: Optional[Display] = None
        self._vnc_process: Optional[subprocess.Popen[str]] = None

    @classmethod
    def from_config(cls, config: BrowserConfig) -> Optional["VirtualDisplay"]:
        """Return a display for headed VNC runs, or ``None`` when not wanted."""

        if config.headless or not config.enable_vnc:
            return None
        return cls(
            width=config.viewport_width,
            height=config.viewport_height,
            host=config.vnc_host,
            port=config.vnc_port,
        )

    def start(self) -> Optional[VNCConnectionInfo]:
        LOGGER.debug("Starting %sx%s virtual display", self._width, self._height)
        self._display = Display(visible=False, size=(self._width, self._height))
        self._display.start()
        display_var = os.environ.get("DISPLAY")
        if not display_var:
            raise RuntimeError("DISPLAY environment variable missing after starting virtual display")
        if shutil.which("x11vnc") is None:
            LOGGER.warning("x11vnc not found; browsers run on %s without VNC", display_var)
            return None
        port = self._port or 5900 + int(display_var.lstrip(":").split(".")[0])
        LOGGER.debug("Launching x11vnc on display %s port %s", display_var, port)
        self._vnc_process = subprocess.Popen(
            [
                "x11vnc",
                "-display",
                display_var,
                "-rfbport",
                str(port),
                "-forever",
                "-shared",
                "-nopw",
                "-quiet",
            ],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            text=True,
        )
        return VNCConnectionInfo(host=self._host, port=port, display=display_var)

    def stop(self) -> None:
        if self._vnc_process and self._vnc_process.poll() is None:
            self._vnc_process.terminate()
            try:
                self._vnc_process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                self._vnc_process.kill()
        if self._display:
            LOGGER.debug("Stopping virtual display")
            self._display.stop()
        self._display = None
        self._vnc_process = None
