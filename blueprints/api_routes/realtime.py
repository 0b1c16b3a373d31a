from flask import current_app, jsonify, request

from api_errors import error_response
from broadcast_protocol import BroadcastFormatError, BroadcastMessage, channel_session_id
from change_feed import ROW_TABLES, session_topic

URL_PREFIX = "/api/phraseotomy"


def register_realtime_api_routes(bp, context):
    change_feed = context["change_feed"]
    services = context["services"]

    def _poll_args():
        after = request.args.get("after", type=int)
        timeout = request.args.get("timeout", default=0.0, type=float) or 0.0
        return after, max(0.0, timeout)

    @bp.route(
        f"{URL_PREFIX}/sessions/<string:session_id>/changes",
        methods=["GET"],
        endpoint="api_phraseotomy_changes",
    )
    def api_phraseotomy_changes(session_id: str):
        # No membership check: subscribers must still see the deletion events
        # of a session that has just been cleaned up.
        after, timeout = _poll_args()
        raw_tables = (request.args.get("tables") or "").strip()
        tables = [name.strip() for name in raw_tables.split(",") if name.strip()]
        unknown = [name for name in tables if name not in ROW_TABLES]
        if unknown:
            return error_response(
                status=400,
                code="unknown_table",
                message=f"Unknown table(s): {', '.join(unknown)}",
            )
        services.increment_metric("feed_polls")
        return jsonify(
            change_feed.poll(
                session_topic(session_id), after, timeout=timeout, tables=tables or None
            )
        )

    @bp.route(
        f"{URL_PREFIX}/channels/<string:channel>/messages",
        methods=["GET"],
        endpoint="api_phraseotomy_channel_poll",
    )
    def api_phraseotomy_channel_poll(channel: str):
        if not channel_session_id(channel):
            return error_response(
                status=400, code="unknown_channel", message="Unknown broadcast channel."
            )
        after, timeout = _poll_args()
        services.increment_metric("feed_polls")
        return jsonify(change_feed.poll(channel, after, timeout=timeout))

    @bp.route(
        f"{URL_PREFIX}/channels/<string:channel>/messages",
        methods=["POST"],
        endpoint="api_phraseotomy_channel_send",
    )
    def api_phraseotomy_channel_send(channel: str):
        if not channel_session_id(channel):
            return error_response(
                status=400, code="unknown_channel", message="Unknown broadcast channel."
            )
        try:
            message = BroadcastMessage.from_dict(request.get_json(silent=True))
        except BroadcastFormatError as exc:
            return error_response(status=400, code="invalid_broadcast", message=str(exc))

        seq = change_feed.broadcast(channel, message.to_dict())
        services.increment_metric("broadcasts_relayed")
        current_app.logger.debug("Relayed %s on %s (seq %s)", message.event.value, channel, seq)
        return jsonify(ok=True, seq=seq)
