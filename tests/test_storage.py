"""Tests for scenecast.storage: JSON persistence of the session and image map."""

import json
from pathlib import Path

from scenecast.models import WELCOME_MARKUP, Session
from scenecast.storage import Storage


class TestStorageInit:
    def test_creates_base_directory(self, tmp_path: Path) -> None:
        base = tmp_path / "nested" / "data"
        Storage(base)
        assert base.is_dir()

    def test_images_dir_under_base(self, storage: Storage) -> None:
        assert storage.images_dir == storage.base_path / "images"


class TestLastMarkup:
    def test_missing_returns_none(self, storage: Storage) -> None:
        assert storage.get_last_markup() is None

    def test_round_trip(self, storage: Storage) -> None:
        storage.set_last_markup("<html>x</html>")
        assert storage.get_last_markup() == "<html>x</html>"

    def test_corrupt_file_ignored(self, storage: Storage) -> None:
        (storage.base_path / "last_markup.json").write_text("{not json")
        assert storage.get_last_markup() is None


class TestLists:
    def test_history_defaults_empty(self, storage: Storage) -> None:
        assert storage.get_scene_history() == []
        assert storage.get_action_summaries() == []

    def test_history_round_trip(self, storage: Storage) -> None:
        storage.set_scene_history(["<html>1</html>", "<html>2</html>"])
        assert storage.get_scene_history() == ["<html>1</html>", "<html>2</html>"]

    def test_summaries_written_as_json_array(self, storage: Storage) -> None:
        storage.set_action_summaries(["opened the door"])
        raw = json.loads((storage.base_path / "action_summaries.json").read_text())
        assert raw == ["opened the door"]

    def test_no_temp_file_left(self, storage: Storage) -> None:
        storage.set_scene_history(["a"])
        assert not list(storage.base_path.glob("*.tmp"))


class TestImageMap:
    def test_defaults_empty(self, storage: Storage) -> None:
        assert storage.get_image_map() == {}

    def test_round_trip(self, storage: Storage) -> None:
        storage.set_image_map({"https://img/a": "abc.jpg"})
        assert storage.get_image_map() == {"https://img/a": "abc.jpg"}

    def test_non_object_ignored(self, storage: Storage) -> None:
        (storage.base_path / "image_cache.json").write_text("[1, 2]")
        assert storage.get_image_map() == {}


class TestSession:
    def test_fresh_session_shows_welcome(self, storage: Storage) -> None:
        s = storage.load_session()
        assert s.current_markup == WELCOME_MARKUP
        assert storage.has_saved_game() is False

    def test_save_and_load(self, storage: Storage) -> None:
        storage.save_session(Session(
            current_markup="<html>now</html>",
            scene_history=["<html>then</html>", "<html>now</html>"],
            action_summaries=["went north"],
            processing_stage="generate_scene",
            last_action="go north",
        ))
        s = storage.load_session()
        assert s.current_markup == "<html>now</html>"
        assert s.scene_history == ["<html>then</html>", "<html>now</html>"]
        assert s.action_summaries == ["went north"]
        assert storage.has_saved_game() is True

    def test_loaded_session_is_idle(self, storage: Storage) -> None:
        storage.save_session(Session(processing_stage="summarize_turn", last_action="x"))
        s = storage.load_session()
        assert s.processing_stage is None
        assert s.last_action is None

    def test_falls_back_to_last_history_entry(self, storage: Storage) -> None:
        storage.set_scene_history(["<html>1</html>", "<html>2</html>"])
        assert storage.load_session().current_markup == "<html>2</html>"

    def test_clear_forgets_game_but_not_image_map(self, storage: Storage) -> None:
        storage.save_session(Session(current_markup="<html>x</html>", scene_history=["<html>x</html>"]))
        storage.set_image_map({"k": "f.jpg"})
        storage.clear()
        assert storage.has_saved_game() is False
        assert storage.load_session().current_markup == WELCOME_MARKUP
        assert storage.get_image_map() == {"k": "f.jpg"}

    def test_clear_when_nothing_saved(self, storage: Storage) -> None:
        storage.clear()
        assert storage.has_saved_game() is False
