import json
import random
import sys
from pathlib import Path

import pytest
from flask import Flask

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app_services import AppServiceConfig, AppServices
from blueprints.api import create_api_blueprint
from change_feed import ChangeFeed
from phraseotomy_service import PhraseotomyService

TEST_THEMES = {
    "themes": [
        {
            "id": "travel",
            "name": "Travel",
            "elements": [
                {"id": "travel-passport", "name": "Passport", "icon": "passport", "is_whisp": True},
                {"id": "travel-suitcase", "name": "Suitcase", "icon": "suitcase"},
                {"id": "travel-plane", "name": "Plane", "icon": "plane"},
                {"id": "travel-map", "name": "Map", "icon": "map"},
                {"id": "travel-compass", "name": "Compass", "icon": "compass"},
            ],
        },
        {
            "id": "food",
            "name": "Food",
            "elements": [
                {"id": "food-pizza", "name": "Pizza", "icon": "pizza", "is_whisp": True},
                {"id": "food-fork", "name": "Fork", "icon": "fork"},
                {"id": "food-plate", "name": "Plate", "icon": "plate"},
                {"id": "food-cup", "name": "Cup", "icon": "cup"},
            ],
        },
        {
            "id": "core-basics",
            "name": "Basics",
            "core": True,
            "elements": [
                {"id": "core-sun", "name": "Sun", "icon": "sun"},
                {"id": "core-heart", "name": "Heart", "icon": "heart"},
                {"id": "core-clock", "name": "Clock", "icon": "clock"},
            ],
        },
    ]
}


class ManualScheduler:
    """Stands in for threading.Timer; callbacks run only when the test says so."""

    def __init__(self):
        self.calls = []

    def __call__(self, delay, callback):
        self.calls.append((delay, callback))
        return None

    def run_all(self):
        calls, self.calls = self.calls, []
        for _delay, callback in calls:
            callback()


@pytest.fixture
def themes_path(tmp_path):
    path = tmp_path / "themes.json"
    path.write_text(json.dumps(TEST_THEMES), encoding="utf-8")
    return path


@pytest.fixture
def make_service(tmp_path, themes_path):
    def _make(**overrides):
        options = {
            "db_path": str(tmp_path / "test.db"),
            "themes": str(themes_path),
            "change_feed": ChangeFeed(),
            "rng": random.Random(7),
            "cleanup_scheduler": ManualScheduler(),
        }
        options.update(overrides)
        return PhraseotomyService(**options)

    return _make


@pytest.fixture
def app_ctx(tmp_path, themes_path):
    config = AppServiceConfig(
        db_path=str(tmp_path / "test.db"),
        themes_path=str(themes_path),
        is_prod=False,
        turn_scheduler_mode="thread",
        log_path=str(tmp_path / "test.log"),
    )

    app = Flask(__name__)
    app.config["TESTING"] = True
    app.config["SECRET_KEY"] = "test-secret"
    app.json.sort_keys = False

    change_feed = ChangeFeed()
    cleanup_scheduler = ManualScheduler()
    game_service = PhraseotomyService(
        db_path=config.db_path,
        themes=config.themes_path,
        change_feed=change_feed,
        min_players=config.min_players,
        max_players=config.max_players,
        cleanup_delay_seconds=config.cleanup_delay_seconds,
        round_advance_mode=config.round_advance_mode,
        round_results_seconds=config.round_results_seconds,
        rng=random.Random(7),
        cleanup_scheduler=cleanup_scheduler,
    )
    services = AppServices(
        app=app,
        game_service=game_service,
        change_feed=change_feed,
        config=config,
    )
    services.register_request_hooks()
    app.register_blueprint(
        create_api_blueprint(
            services=services,
            game_service=game_service,
            change_feed=change_feed,
        )
    )
    return {
        "app": app,
        "services": services,
        "game_service": game_service,
        "change_feed": change_feed,
        "cleanup_scheduler": cleanup_scheduler,
    }


@pytest.fixture
def app(app_ctx):
    return app_ctx["app"]


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def services(app_ctx):
    return app_ctx["services"]


@pytest.fixture
def game_service(app_ctx):
    return app_ctx["game_service"]


@pytest.fixture
def change_feed(app_ctx):
    return app_ctx["change_feed"]


@pytest.fixture
def cleanup_scheduler(app_ctx):
    return app_ctx["cleanup_scheduler"]


def build_lobby(service, names=("Host", "Bea", "Cal", "Dee"), **create_kwargs):
    """Create a lobby and join the remaining players; returns ids in join order."""
    created = service.create_session(player_name=names[0], **create_kwargs)
    player_ids = [created["player_id"]]
    for name in names[1:]:
        joined = service.join_lobby(created["lobby_code"], name)
        player_ids.append(joined["player_id"])
    return {
        "session_id": created["session_id"],
        "lobby_code": created["lobby_code"],
        "host_id": player_ids[0],
        "player_ids": player_ids,
    }


@pytest.fixture
def lobby(game_service):
    return build_lobby(game_service)
