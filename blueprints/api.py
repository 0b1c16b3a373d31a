from flask import Blueprint, jsonify

from blueprints.api_routes.games import register_game_api_routes
from blueprints.api_routes.realtime import register_realtime_api_routes


def create_api_blueprint(*, services, game_service, change_feed):
    bp = Blueprint("api", __name__)
    context = {
        "services": services,
        "game_service": game_service,
        "change_feed": change_feed,
    }

    @bp.route("/health", methods=["GET"], endpoint="health")
    def health():
        return jsonify(status="ok")

    @bp.route("/api/ops/metrics", methods=["GET"], endpoint="api_ops_metrics")
    def api_ops_metrics():
        return jsonify(metrics=services.get_runtime_metrics())

    register_game_api_routes(bp, context)
    register_realtime_api_routes(bp, context)
    return bp
