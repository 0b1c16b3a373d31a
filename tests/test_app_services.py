import logging
import time

import pytest
from flask import Flask

from app_services import AppServiceConfig, AppServices, MaxSizeFileHandler, load_config_from_env
from change_feed import ChangeFeed
from conftest import build_lobby

PA_VARS = ("PYTHONANYWHERE_SITE", "PYTHONANYWHERE_DOMAIN", "PYTHONANYWHERE_USERNAME", "PA_SITE")


@pytest.fixture(autouse=True)
def _not_on_pythonanywhere(monkeypatch):
    for name in PA_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("HOSTNAME", "localhost")


def _services(tmp_path, themes_path=None, **overrides):
    options = {
        "db_path": str(tmp_path / "cfg.db"),
        "themes_path": str(themes_path or tmp_path / "missing-themes.json"),
        "is_prod": False,
    }
    options.update(overrides)
    return AppServices(
        app=Flask(__name__),
        game_service=None,
        change_feed=ChangeFeed(),
        config=AppServiceConfig(**options),
    )


def test_default_config_passes_checks(tmp_path, themes_path):
    assert _services(tmp_path, themes_path).validate_runtime_config() == []


def test_config_warnings(tmp_path):
    services = _services(
        tmp_path,
        min_players=6,
        max_players=4,
        cleanup_delay_seconds=0,
        guess_time_seconds=-5,
        round_results_seconds=-1,
        round_advance_mode="server",
        turn_scheduler_mode="cron",
    )

    warnings = services.validate_runtime_config()

    assert "MIN_PLAYERS is larger than MAX_PLAYERS; no game can start." in warnings
    assert "CLEANUP_DELAY_SECONDS should be greater than 0." in warnings
    assert "GUESS_TIME_SECONDS should be greater than 0." in warnings
    assert "ROUND_ADVANCE_MODE should be one of: auto, client." in warnings
    assert "TURN_SCHEDULER_MODE should be one of: auto, thread, external." in warnings
    assert any("ROUND_RESULTS_SECONDS" in warning for warning in warnings)
    assert any("not found" in warning for warning in warnings)


def test_pythonanywhere_prefers_external_scheduler(tmp_path, themes_path, monkeypatch):
    monkeypatch.setenv("PYTHONANYWHERE_SITE", "www.pythonanywhere.com")

    assert _services(tmp_path, themes_path).resolve_turn_scheduler_mode() == "external"

    forced = _services(tmp_path, themes_path, turn_scheduler_mode="thread")
    assert any("PythonAnywhere" in warning for warning in forced.validate_runtime_config())


def test_load_config_from_env(monkeypatch):
    monkeypatch.setenv("IS_PROD", "yes")
    monkeypatch.setenv("MIN_PLAYERS", "three")
    monkeypatch.setenv("MAX_PLAYERS", "8")
    monkeypatch.setenv("ROUND_ADVANCE_MODE", " Client ")
    monkeypatch.setenv("PHRASEOTOMY_DB", "/tmp/ph.db")

    config = load_config_from_env()

    assert config.is_prod is True
    assert config.min_players == 4
    assert config.max_players == 8
    assert config.round_advance_mode == "client"
    assert config.db_path == "/tmp/ph.db"


def test_scheduler_thread_not_started_outside_reloader(tmp_path, monkeypatch):
    monkeypatch.delenv("WERKZEUG_RUN_MAIN", raising=False)
    services = _services(tmp_path, turn_scheduler_mode="thread")
    services.start_turn_timeout_scheduler()
    assert services._turn_scheduler_thread is None

    external = _services(tmp_path, turn_scheduler_mode="external", is_prod=True)
    external.start_turn_timeout_scheduler()
    assert external._turn_scheduler_thread is None


def test_sweep_skips_stalled_turns_and_counts(services, game_service):
    lobby = build_lobby(game_service)
    game_service.start_game(lobby["session_id"], lobby["host_id"])

    summary = services.run_turn_timeout_sweep(now_ts=int(time.time()) + 600 + 30 + 5)

    assert summary["skipped"] == [lobby["session_id"]]
    assert summary["cleaned_up"] == []
    metrics = services.get_runtime_metrics()
    assert metrics["turn_sweeps"] == 1
    assert metrics["turns_skipped"] == 1


def test_sweep_cleans_up_finished_sessions(services, game_service):
    lobby = build_lobby(game_service, total_rounds=1)
    game_service.start_game(lobby["session_id"], lobby["host_id"])
    game_service.skip_turn(lobby["session_id"], "test")

    summary = services.run_turn_timeout_sweep(now_ts=int(time.time()) + 120)

    assert summary["cleaned_up"] == [lobby["session_id"]]
    assert services.get_runtime_metrics()["sessions_cleaned_up"] == 1


def test_opportunistic_sweep_in_external_mode(services, monkeypatch):
    monkeypatch.setattr(services, "_scheduler_mode_cache", "external")
    services.maybe_run_scheduled_jobs_opportunistically(force=True)
    assert services.get_runtime_metrics()["turn_sweeps"] == 1

    # Within the interval nothing runs unless forced.
    services.maybe_run_scheduled_jobs_opportunistically()
    assert services.get_runtime_metrics()["turn_sweeps"] == 1

    def broken_sweep(**kwargs):
        raise RuntimeError("database is locked")

    monkeypatch.setattr(services.game_service, "sweep_timeouts", broken_sweep)
    services.maybe_run_scheduled_jobs_opportunistically(force=True)

    metrics = services.get_runtime_metrics()
    assert metrics["turn_sweep_errors"] == 1
    assert metrics["turn_sweep_last_error"] == "database is locked"


def test_request_hooks_do_not_sweep_in_thread_mode(client, services):
    client.get("/health")
    assert services.get_runtime_metrics()["turn_sweeps"] == 0


def test_max_size_file_handler_stops_at_limit(tmp_path):
    path = tmp_path / "capped.log"
    handler = MaxSizeFileHandler(str(path), max_bytes=20)
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger = logging.getLogger("phraseotomy.test.capped")
    logger.propagate = False
    logger.addHandler(handler)
    try:
        logger.warning("first message that is long enough")
        logger.warning("second message")
    finally:
        logger.removeHandler(handler)
        handler.close()

    assert path.read_text() == "first message that is long enough\n"
