"""
External verification surfaces for the eSign gate.

A surface is either a popup window the gate can watch for closing, or a
full-page redirect that leaves the current document. Mobile browsers
always get the redirect.
"""

import asyncio
import re
from abc import ABC, abstractmethod
from enum import Enum
from typing import Optional

from checkout_engine.services.navigation import INavigator


class SurfaceMode(str, Enum):
    POPUP = "popup"
    REDIRECT = "redirect"


_MOBILE_UA = re.compile(r"Android|webOS|iPhone|iPad|iPod|BlackBerry|IEMobile|Opera Mini", re.IGNORECASE)


def preferred_mode(user_agent: Optional[str]) -> SurfaceMode:
    if user_agent and _MOBILE_UA.search(user_agent):
        return SurfaceMode.REDIRECT
    return SurfaceMode.POPUP


class SurfaceHandle:
    """An opened surface. The environment calls mark_closed() when the user closes it."""

    def __init__(self, mode: SurfaceMode, url: str):
        self.mode = mode
        self.url = url
        self._closed = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def mark_closed(self) -> None:
        self._closed.set()

    async def wait_closed(self) -> None:
        await self._closed.wait()

    async def close(self) -> None:
        self.mark_closed()


class ISigningSurface(ABC):

    @abstractmethod
    async def open(self, url: str, mode: SurfaceMode) -> SurfaceHandle:
        """Open the verification page; raises PopupBlocked if a popup cannot open."""
        pass


class RedirectSigningSurface(ISigningSurface):
    """Always navigates the current page; used by server-rendered flows."""

    def __init__(self, navigator: INavigator):
        self._navigator = navigator

    async def open(self, url: str, mode: SurfaceMode) -> SurfaceHandle:
        await self._navigator.redirect(url)
        return SurfaceHandle(SurfaceMode.REDIRECT, url)
