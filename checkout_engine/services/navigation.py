"""
Full-page navigation seam.

Redirect flows (bank authorization, UPI links, mobile eSign) leave the
current document. The engine records the target through INavigator and
expects to be resumed from session-stored identifiers afterwards.
"""

from abc import ABC, abstractmethod
from typing import Optional


class INavigator(ABC):

    @abstractmethod
    async def redirect(self, url: str) -> None:
        pass


class RecordingNavigator(INavigator):
    """Keeps the redirect history; the HTTP layer turns the last one into a response."""

    def __init__(self):
        self.history: list[str] = []

    async def redirect(self, url: str) -> None:
        self.history.append(url)

    @property
    def last(self) -> Optional[str]:
        return self.history[-1] if self.history else None

    def pop(self) -> Optional[str]:
        return self.history.pop() if self.history else None
