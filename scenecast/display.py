"""Display collaborator: where the pipeline shows scenes and notices."""

from __future__ import annotations

import logging
from typing import Protocol

from scenecast.images import DEFAULT_ENDPOINT, rewrite_image_sources
from scenecast.presentation import wrap_document

logger = logging.getLogger(__name__)


class Display(Protocol):
    def render(self, markup: str, *, provisional: bool = False) -> None: ...

    def render_diagnosis(self, markup: str) -> None: ...


class SceneBoard:
    """In-memory display the HTTP API serves to the browser.

    Templated images are pointed at the local image route so the browser
    gets cached files. Every render bumps `revision` so clients can poll
    cheaply.
    """

    def __init__(self, markup: str = "", *, image_endpoint: str = DEFAULT_ENDPOINT) -> None:
        self._endpoint = image_endpoint
        self.html = self._document(markup) if markup else ""
        self.provisional = False
        self.revision = 0
        self.diagnosis_html: str | None = None

    def _document(self, markup: str) -> str:
        return wrap_document(rewrite_image_sources(markup, self._endpoint))

    def render(self, markup: str, *, provisional: bool = False) -> None:
        self.html = self._document(markup)
        self.provisional = provisional
        self.revision += 1
        logger.debug("render revision=%d provisional=%s len=%d", self.revision, provisional, len(markup))

    def render_diagnosis(self, markup: str) -> None:
        self.diagnosis_html = self._document(markup)
        self.revision += 1
