import logging
import os
import secrets

from dotenv import load_dotenv
from flask import Flask

from app_services import AppServiceConfig, AppServices, load_config_from_env
from blueprints.api import create_api_blueprint
from change_feed import ChangeFeed
from phraseotomy_service import PhraseotomyService

logging.basicConfig(
    level=logging.INFO,
    format="[%(asctime)s] %(levelname)s: %(message)s",
)

# Load the .env file
load_dotenv()

HOST = os.getenv("HOST", "127.0.0.1")
PORT = os.getenv("PORT", "5000")


def create_app(config: AppServiceConfig, *, configure_logging: bool = True, **service_overrides):
    """Build the Flask app, the game service and the change feed around ``config``.

    ``service_overrides`` are passed to ``PhraseotomyService`` (tests inject a
    seeded rng or a manual cleanup scheduler this way).
    """
    app = Flask(__name__)
    app.config["SECRET_KEY"] = os.getenv("SECRET_KEY", secrets.token_hex(32))
    app.json.sort_keys = False

    change_feed = ChangeFeed()
    game_service = PhraseotomyService(
        db_path=config.db_path,
        themes=config.themes_path,
        change_feed=change_feed,
        min_players=config.min_players,
        max_players=config.max_players,
        cleanup_delay_seconds=config.cleanup_delay_seconds,
        round_advance_mode=config.round_advance_mode,
        round_results_seconds=config.round_results_seconds,
        story_time_seconds=config.story_time_seconds,
        guess_time_seconds=config.guess_time_seconds,
        **service_overrides,
    )
    services = AppServices(
        app=app,
        game_service=game_service,
        change_feed=change_feed,
        config=config,
    )
    if configure_logging:
        services.configure_logging()
    services.register_request_hooks()
    services.validate_runtime_config()

    app.register_blueprint(
        create_api_blueprint(
            services=services,
            game_service=game_service,
            change_feed=change_feed,
        )
    )
    app.extensions["phraseotomy"] = services
    return app, services


app, services = create_app(load_config_from_env())
services.start_turn_timeout_scheduler()


if __name__ == "__main__":
    services.validate_runtime_config()
    app.run(host=HOST, port=int(PORT), debug=not services.config.is_prod, threaded=True)
