"""JSON file storage.

All persistent state is stored in flat JSON files under a configurable base
directory. There is no database or ORM; reads and writes go through plain
helper methods that load and dump JSON.

Directory layout:

    {base}/
      config.json             ← app settings (see scenecast.config)
      last_markup.json        ← markup of the scene currently shown
      scene_history.json      ← append-only list of finalized scene markup
      action_summaries.json   ← append-only list of turn synopses
      image_cache.json        ← {normalized image key: cached filename}
      images/                 ← cached image files (owned by ImageCache)
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from scenecast.models import WELCOME_MARKUP, Session

logger = logging.getLogger(__name__)

_LAST_MARKUP = "last_markup.json"
_SCENE_HISTORY = "scene_history.json"
_ACTION_SUMMARIES = "action_summaries.json"
_IMAGE_CACHE = "image_cache.json"


class Storage:
    def __init__(self, base_path: Path) -> None:
        self._base = base_path
        self._base.mkdir(parents=True, exist_ok=True)

    @property
    def base_path(self) -> Path:
        return self._base

    @property
    def images_dir(self) -> Path:
        return self._base / "images"

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _path(self, name: str) -> Path:
        return self._base / name

    def _read_json(self, name: str, default: Any) -> Any:
        path = self._path(name)
        if not path.is_file():
            return default
        try:
            return json.loads(path.read_text())
        except json.JSONDecodeError as e:
            logger.warning("Ignoring corrupt %s: %s", path, e)
            return default

    def _write_json(self, name: str, data: Any) -> None:
        """Write via a temp file so a crash never leaves half a file behind."""
        path = self._path(name)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(json.dumps(data, indent=2))
        os.replace(tmp, path)

    # ------------------------------------------------------------------
    # Last markup
    # ------------------------------------------------------------------

    def get_last_markup(self) -> str | None:
        value = self._read_json(_LAST_MARKUP, None)
        return value if isinstance(value, str) else None

    def set_last_markup(self, markup: str) -> None:
        self._write_json(_LAST_MARKUP, markup)

    # ------------------------------------------------------------------
    # Scene history and action summaries (append-only lists)
    # ------------------------------------------------------------------

    def get_scene_history(self) -> list[str]:
        return [str(s) for s in self._read_json(_SCENE_HISTORY, [])]

    def set_scene_history(self, history: list[str]) -> None:
        self._write_json(_SCENE_HISTORY, list(history))

    def get_action_summaries(self) -> list[str]:
        return [str(s) for s in self._read_json(_ACTION_SUMMARIES, [])]

    def set_action_summaries(self, summaries: list[str]) -> None:
        self._write_json(_ACTION_SUMMARIES, list(summaries))

    # ------------------------------------------------------------------
    # Image cache map
    # ------------------------------------------------------------------

    def get_image_map(self) -> dict[str, str]:
        data = self._read_json(_IMAGE_CACHE, {})
        if not isinstance(data, dict):
            return {}
        return {str(k): str(v) for k, v in data.items()}

    def set_image_map(self, mapping: dict[str, str]) -> None:
        self._write_json(_IMAGE_CACHE, dict(mapping))

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    def load_session(self) -> Session:
        """Restore the session, or return a fresh one if nothing was saved.

        The in-flight fields (stage, last action) are never persisted: a
        restored session always starts idle.
        """
        history = self.get_scene_history()
        last = self.get_last_markup()
        current = last or (history[-1] if history else WELCOME_MARKUP)
        return Session(
            current_markup=current,
            scene_history=history,
            action_summaries=self.get_action_summaries(),
        )

    def has_saved_game(self) -> bool:
        return self._path(_LAST_MARKUP).is_file() or bool(self.get_scene_history())

    def save_session(self, session: Session) -> None:
        self.set_last_markup(session.current_markup)
        self.set_scene_history(session.scene_history)
        self.set_action_summaries(session.action_summaries)

    def clear(self) -> None:
        """Forget the saved game (the image map is cleared by ImageCache.reset)."""
        for name in (_LAST_MARKUP, _SCENE_HISTORY, _ACTION_SUMMARIES):
            self._path(name).unlink(missing_ok=True)
