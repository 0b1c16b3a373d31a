from __future__ import annotations

import logging
import os
import threading
import time as timelib
from dataclasses import dataclass
from pathlib import Path

from flask import g, request

DEFAULT_THEMES_PATH = str(
    Path(__file__).resolve().parent / "static" / "assets" / "phraseotomy" / "themes.json"
)


class MaxSizeFileHandler(logging.FileHandler):
    def __init__(self, filename: str, max_bytes: int, **kwargs):
        self.max_bytes = max_bytes
        super().__init__(filename, **kwargs)

    def emit(self, record):
        try:
            if os.path.exists(self.baseFilename):
                if os.path.getsize(self.baseFilename) >= self.max_bytes:
                    return
            super().emit(record)
        except Exception:
            self.handleError(record)


@dataclass(frozen=True)
class AppServiceConfig:
    db_path: str
    themes_path: str
    is_prod: bool
    min_players: int = 4
    max_players: int = 12
    cleanup_delay_seconds: int = 35
    round_advance_mode: str = "auto"
    round_results_seconds: int = 5
    story_time_seconds: int = 600
    guess_time_seconds: int = 420
    turn_timeout_grace_seconds: int = 30
    turn_scheduler_mode: str = "auto"
    turn_sweep_interval_seconds: int = 30
    log_path: str = "phraseotomy.log"


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("true", "1", "t", "yes", "y")


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logging.getLogger(__name__).warning(
            "Ignoring non-integer %s=%r; using %s.", name, raw, default
        )
        return default


def load_config_from_env() -> AppServiceConfig:
    return AppServiceConfig(
        db_path=os.getenv("PHRASEOTOMY_DB", "phraseotomy.db"),
        themes_path=os.getenv("PHRASEOTOMY_THEMES", DEFAULT_THEMES_PATH),
        is_prod=_env_bool("IS_PROD"),
        min_players=_env_int("MIN_PLAYERS", 4),
        max_players=_env_int("MAX_PLAYERS", 12),
        cleanup_delay_seconds=_env_int("CLEANUP_DELAY_SECONDS", 35),
        round_advance_mode=os.getenv("ROUND_ADVANCE_MODE", "auto").strip().lower(),
        round_results_seconds=_env_int("ROUND_RESULTS_SECONDS", 5),
        story_time_seconds=_env_int("STORY_TIME_SECONDS", 600),
        guess_time_seconds=_env_int("GUESS_TIME_SECONDS", 420),
        turn_timeout_grace_seconds=_env_int("TURN_TIMEOUT_GRACE_SECONDS", 30),
        turn_scheduler_mode=os.getenv("TURN_SCHEDULER_MODE", "auto").strip().lower(),
        turn_sweep_interval_seconds=_env_int("TURN_SWEEP_INTERVAL_SECONDS", 30),
        log_path=os.getenv("PHRASEOTOMY_LOG", "phraseotomy.log"),
    )


class AppServices:
    def __init__(self, app, game_service, change_feed, config: AppServiceConfig):
        self.app = app
        self.game_service = game_service
        self.change_feed = change_feed
        self.config = config

        self._turn_scheduler_thread: threading.Thread | None = None
        self._turn_scheduler_lock = threading.Lock()
        self._opportunistic_scheduler_lock = threading.Lock()
        self._opportunistic_last_check_at = 0.0
        self._scheduler_mode_cache: str | None = None
        self._external_scheduler_notice_emitted = False
        self.metrics_lock = threading.Lock()
        self.runtime_metrics: dict[str, int] = {
            "sessions_created": 0,
            "games_started": 0,
            "guesses_submitted": 0,
            "guesses_timed_out": 0,
            "turns_skipped": 0,
            "lobbies_ended": 0,
            "sessions_cleaned_up": 0,
            "broadcasts_relayed": 0,
            "feed_polls": 0,
            "turn_sweeps": 0,
            "turn_sweep_errors": 0,
        }
        self.runtime_status: dict[str, str] = {
            "turn_sweep_last_error": "",
        }
        self.opportunistic_scheduler_interval_seconds = max(
            5, int(config.turn_sweep_interval_seconds)
        )

    # ------------------------
    # Runtime validation + metrics
    # ------------------------

    def validate_runtime_config(self) -> list[str]:
        warnings: list[str] = []
        if self.config.min_players > self.config.max_players:
            warnings.append("MIN_PLAYERS is larger than MAX_PLAYERS; no game can start.")

        if self.config.min_players < 2:
            warnings.append("MIN_PLAYERS should be at least 2 (one storyteller, one guesser).")

        for name, value in (
            ("CLEANUP_DELAY_SECONDS", self.config.cleanup_delay_seconds),
            ("STORY_TIME_SECONDS", self.config.story_time_seconds),
            ("GUESS_TIME_SECONDS", self.config.guess_time_seconds),
            ("TURN_SWEEP_INTERVAL_SECONDS", self.config.turn_sweep_interval_seconds),
        ):
            if value <= 0:
                warnings.append(f"{name} should be greater than 0.")

        if self.config.round_results_seconds < 0 or self.config.turn_timeout_grace_seconds < 0:
            warnings.append(
                "ROUND_RESULTS_SECONDS and TURN_TIMEOUT_GRACE_SECONDS should be 0 or greater."
            )

        if (self.config.round_advance_mode or "auto") not in {"auto", "client"}:
            warnings.append("ROUND_ADVANCE_MODE should be one of: auto, client.")

        mode = (self.config.turn_scheduler_mode or "auto").strip().lower()
        if mode not in {"auto", "thread", "external"}:
            warnings.append(
                "TURN_SCHEDULER_MODE should be one of: auto, thread, external."
            )

        if not Path(self.config.themes_path).is_file():
            warnings.append(
                f"Theme catalogue {self.config.themes_path} not found; built-in themes are used."
            )

        if self._looks_like_pythonanywhere() and self.resolve_turn_scheduler_mode() == "thread":
            warnings.append(
                "PythonAnywhere detected; prefer TURN_SCHEDULER_MODE=external and run the sweep as a scheduled task."
            )

        if warnings:
            for warning in warnings:
                self.app.logger.warning("Config warning: %s", warning)
        else:
            self.app.logger.info("Runtime configuration checks passed.")
        return warnings

    def increment_metric(self, name: str, amount: int = 1) -> None:
        if amount <= 0:
            return
        with self.metrics_lock:
            self.runtime_metrics[name] = self.runtime_metrics.get(name, 0) + amount

    def _set_runtime_status(self, key: str, value: str) -> None:
        text = (value or "").strip()
        if len(text) > 500:
            text = text[:497] + "..."
        with self.metrics_lock:
            self.runtime_status[key] = text

    @staticmethod
    def _looks_like_pythonanywhere() -> bool:
        if any(
            os.getenv(name)
            for name in (
                "PYTHONANYWHERE_SITE",
                "PYTHONANYWHERE_DOMAIN",
                "PYTHONANYWHERE_USERNAME",
                "PA_SITE",
            )
        ):
            return True
        hostname = (os.getenv("HOSTNAME") or "").strip().lower()
        return "pythonanywhere" in hostname

    def resolve_turn_scheduler_mode(self) -> str:
        if self._scheduler_mode_cache is not None:
            return self._scheduler_mode_cache

        raw_mode = (self.config.turn_scheduler_mode or "auto").strip().lower()
        if raw_mode not in {"auto", "thread", "external"}:
            raw_mode = "auto"
        if raw_mode == "auto":
            mode = "external" if self._looks_like_pythonanywhere() else "thread"
        else:
            mode = raw_mode
        self._scheduler_mode_cache = mode
        return mode

    def get_runtime_metrics(self) -> dict:
        with self.metrics_lock:
            snapshot = dict(self.runtime_metrics)
            snapshot.update(self.runtime_status)
        snapshot["turn_scheduler_thread_alive"] = (
            self._turn_scheduler_thread.is_alive()
            if self._turn_scheduler_thread is not None
            else False
        )
        snapshot["turn_scheduler_mode"] = self.resolve_turn_scheduler_mode()
        snapshot["round_advance_mode"] = self.config.round_advance_mode
        snapshot["change_feed_head"] = self.change_feed.head
        snapshot["change_feed_topics"] = self.change_feed.topic_count()
        return snapshot

    # ------------------------
    # Turn timeouts + deferred cleanup
    # ------------------------

    def run_turn_timeout_sweep(self, now_ts: int | None = None) -> dict:
        """Apply expired turn timers and delete sessions past their cleanup time."""
        summary = self.game_service.sweep_timeouts(
            now_ts=now_ts, grace_seconds=self.config.turn_timeout_grace_seconds
        )
        cleaned = self.game_service.cleanup_due_sessions(now_ts=now_ts)
        summary["cleaned_up"] = cleaned
        self.increment_metric("turn_sweeps")
        self.increment_metric("turns_skipped", len(summary["skipped"]))
        self.increment_metric("guesses_timed_out", summary["timed_out_guesses"])
        self.increment_metric("sessions_cleaned_up", len(cleaned))
        if summary["skipped"] or summary["timed_out_guesses"] or summary["advanced"] or cleaned:
            self.app.logger.info(
                "Turn sweep: skipped=%s timed_out_guesses=%s advanced=%s cleaned=%s",
                len(summary["skipped"]),
                summary["timed_out_guesses"],
                len(summary["advanced"]),
                len(cleaned),
            )
        return summary

    def turn_timeout_scheduler_loop(self) -> None:
        self.app.logger.info(
            "Turn timeout scheduler started (every %ss).",
            self.config.turn_sweep_interval_seconds,
        )
        while True:
            try:
                self.run_turn_timeout_sweep()
            except Exception as exc:
                self.increment_metric("turn_sweep_errors")
                self._set_runtime_status("turn_sweep_last_error", str(exc))
                self.app.logger.warning("Turn timeout sweep failed: %s", exc)
            timelib.sleep(max(1, int(self.config.turn_sweep_interval_seconds)))

    def start_turn_timeout_scheduler(self) -> None:
        if self.resolve_turn_scheduler_mode() == "external":
            if not self._external_scheduler_notice_emitted:
                self.app.logger.info(
                    "Turn timeout scheduler is in external mode; run scripts/run_turn_timeouts_once.py from cron."
                )
                self._external_scheduler_notice_emitted = True
            return
        if not self.config.is_prod and os.getenv("WERKZEUG_RUN_MAIN") != "true":
            return

        with self._turn_scheduler_lock:
            if self._turn_scheduler_thread and self._turn_scheduler_thread.is_alive():
                return
            self._turn_scheduler_thread = threading.Thread(
                target=self.turn_timeout_scheduler_loop,
                name="turn-timeout-scheduler",
                daemon=True,
            )
            self._turn_scheduler_thread.start()

    def maybe_run_scheduled_jobs_opportunistically(self, force: bool = False) -> None:
        """
        In external scheduler mode, piggyback the timeout sweep on live requests
        so stalled turns still move when no cron job is configured.
        """
        if self.resolve_turn_scheduler_mode() != "external":
            return

        now_ts = timelib.time()
        with self._opportunistic_scheduler_lock:
            if not force and (
                now_ts - self._opportunistic_last_check_at
                < self.opportunistic_scheduler_interval_seconds
            ):
                return
            self._opportunistic_last_check_at = now_ts

        try:
            self.run_turn_timeout_sweep()
        except Exception as exc:
            self.increment_metric("turn_sweep_errors")
            self._set_runtime_status("turn_sweep_last_error", str(exc))
            self.app.logger.warning("Opportunistic turn sweep failed: %s", exc)

    # ------------------------
    # Logging + request hooks
    # ------------------------

    def configure_logging(self) -> None:
        formatter = logging.Formatter("[%(asctime)s] %(levelname)s: %(message)s")
        console_handler = logging.StreamHandler()
        console_handler.setLevel(logging.INFO)
        console_handler.setFormatter(formatter)

        file_handler = MaxSizeFileHandler(self.config.log_path, max_bytes=2 * 1024 * 1024)
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(formatter)

        self.app.logger.handlers.clear()
        self.app.logger.setLevel(logging.INFO)
        self.app.logger.propagate = False
        self.app.logger.addHandler(console_handler)
        self.app.logger.addHandler(file_handler)
        logging.getLogger("werkzeug").setLevel(logging.ERROR)
        self.app.logger.info("Logging initialised")

    @staticmethod
    def start_timer():
        g.start_time = timelib.time()

    def log_request(self, response):
        duration = round(timelib.time() - g.get("start_time", timelib.time()), 3)
        self.app.logger.info(
            "%s %s (%s) -> %s [%ss]",
            request.method,
            request.path,
            request.endpoint,
            response.status_code,
            duration,
        )
        return response

    def log_exception(self, exception):
        if exception:
            self.app.logger.warning(
                "Unhandled exception on %s %s: %s",
                request.method,
                request.path,
                type(exception).__name__,
            )

    def register_request_hooks(self) -> None:
        self.app.before_request(self.start_timer)
        self.app.before_request(self.maybe_run_scheduled_jobs_opportunistically)
        self.app.after_request(self.log_request)
        self.app.teardown_request(self.log_exception)
