from flask import current_app, jsonify, request

from api_errors import error_response
from game_errors import PhraseotomyError

URL_PREFIX = "/api/phraseotomy"


def register_game_api_routes(bp, context):
    game_service = context["game_service"]
    services = context["services"]

    def _api_error(status: int, code: str, message: str, details=None):
        return error_response(status=status, code=code, message=message, details=details)

    def _respond(fn, *, metric: str = ""):
        try:
            payload = fn()
        except PhraseotomyError as exc:
            if exc.status_code >= 500:
                current_app.logger.error("Phraseotomy API failure: %s", exc)
            return _api_error(exc.status_code, exc.code, str(exc))
        except Exception as exc:
            current_app.logger.exception("Phraseotomy API failure: %s", exc)
            return _api_error(
                500,
                "phraseotomy_unavailable",
                "Phraseotomy is temporarily unavailable.",
            )
        if metric:
            services.increment_metric(metric)
        return jsonify(payload)

    def _body() -> dict:
        data = request.get_json(silent=True)
        return data if isinstance(data, dict) else {}

    def _player_id(data: dict) -> str:
        return str(data.get("player_id") or "").strip()

    def _bootstrap():
        return _respond(game_service.bootstrap)

    def _create_session():
        data = _body()
        return _respond(
            lambda: game_service.create_session(
                player_name=str(data.get("player_name") or "").strip(),
                player_id=_player_id(data) or None,
                lobby_code=str(data.get("lobby_code") or "").strip() or None,
                total_rounds=data.get("total_rounds"),
                turn_mode=data.get("turn_mode"),
                story_time_seconds=data.get("story_time_seconds"),
                guess_time_seconds=data.get("guess_time_seconds"),
            ),
            metric="sessions_created",
        )

    def _join_lobby(lobby_code: str):
        data = _body()
        return _respond(
            lambda: game_service.join_lobby(
                lobby_code=lobby_code,
                player_name=str(data.get("player_name") or "").strip(),
                player_id=_player_id(data) or None,
            )
        )

    def _lobby_data(session_id: str):
        player_id = (request.args.get("player_id") or "").strip()
        return _respond(lambda: game_service.get_lobby_data(session_id, player_id))

    def _game_state(session_id: str):
        player_id = (request.args.get("player_id") or "").strip()
        return _respond(lambda: game_service.get_game_state(session_id, player_id))

    def _start_game(session_id: str):
        data = _body()
        return _respond(
            lambda: game_service.start_game(session_id, _player_id(data)),
            metric="games_started",
        )

    def _update_theme(session_id: str):
        data = _body()
        return _respond(
            lambda: game_service.update_session_theme(
                session_id, _player_id(data), data.get("theme_id")
            )
        )

    def _start_turn(session_id: str):
        data = _body()
        return _respond(
            lambda: game_service.start_turn(
                session_id,
                _player_id(data),
                theme_id=data.get("theme_id"),
                turn_mode=data.get("turn_mode"),
                turn_id=data.get("turn_id"),
            )
        )

    def _save_secret(session_id: str):
        data = _body()
        return _respond(
            lambda: game_service.save_secret_element(
                session_id, _player_id(data), data.get("secret_element_id")
            )
        )

    def _icon_order(session_id: str):
        data = _body()
        return _respond(
            lambda: game_service.update_icon_order(
                session_id, _player_id(data), data.get("icon_ids")
            )
        )

    def _submit_clue(session_id: str):
        data = _body()
        return _respond(
            lambda: game_service.submit_clue(
                session_id,
                _player_id(data),
                recording_url=data.get("recording_url"),
                icon_ids=data.get("icon_ids"),
            )
        )

    def _submit_guess(session_id: str):
        data = _body()
        return _respond(
            lambda: game_service.submit_guess(
                session_id,
                data.get("round_number"),
                _player_id(data),
                data.get("guess"),
            ),
            metric="guesses_submitted",
        )

    def _timeout_guess(session_id: str):
        data = _body()
        return _respond(
            lambda: game_service.auto_submit_guess(
                session_id, data.get("round_number"), _player_id(data)
            ),
            metric="guesses_timed_out",
        )

    def _advance_round(session_id: str):
        data = _body()
        return _respond(
            lambda: game_service.advance_round(
                session_id, data.get("from_round"), player_id=_player_id(data)
            )
        )

    def _update_turn_order(session_id: str):
        data = _body()
        return _respond(
            lambda: game_service.update_turn_order(
                session_id, _player_id(data), data.get("updates")
            )
        )

    def _reorder_player(session_id: str):
        data = _body()
        return _respond(
            lambda: game_service.reorder_player(
                session_id,
                _player_id(data),
                str(data.get("target_player_id") or "").strip(),
                data.get("new_position"),
            )
        )

    def _shuffle(session_id: str):
        data = _body()
        return _respond(
            lambda: game_service.shuffle_turn_order(session_id, _player_id(data))
        )

    def _kick(session_id: str):
        data = _body()
        return _respond(
            lambda: game_service.kick_player(
                session_id,
                str(data.get("player_id_to_kick") or "").strip(),
                _player_id(data),
            )
        )

    def _leave(session_id: str):
        data = _body()
        return _respond(lambda: game_service.leave_lobby(session_id, _player_id(data)))

    def _end(session_id: str):
        data = _body()
        return _respond(
            lambda: game_service.end_lobby(session_id, _player_id(data)),
            metric="lobbies_ended",
        )

    def _skip(session_id: str):
        data = _body()
        player_id = _player_id(data)
        if not player_id:
            return _api_error(400, "missing_identity", "player_id is required.")
        # Any member may report a stalled turn; expected_round keeps it idempotent.
        return _respond(
            lambda: game_service.skip_turn(
                session_id,
                reason=str(data.get("reason") or "").strip(),
                expected_round=data.get("expected_round"),
                player_id=player_id,
            ),
            metric="turns_skipped",
        )

    routes = (
        ("/bootstrap", "bootstrap", _bootstrap, "GET"),
        ("/sessions", "create_session", _create_session, "POST"),
        ("/lobbies/<string:lobby_code>/join", "join_lobby", _join_lobby, "POST"),
        ("/sessions/<string:session_id>/lobby", "lobby_data", _lobby_data, "GET"),
        ("/sessions/<string:session_id>/state", "game_state", _game_state, "GET"),
        ("/sessions/<string:session_id>/start", "start_game", _start_game, "POST"),
        ("/sessions/<string:session_id>/theme", "update_theme", _update_theme, "POST"),
        ("/sessions/<string:session_id>/turn", "start_turn", _start_turn, "POST"),
        ("/sessions/<string:session_id>/secret", "save_secret", _save_secret, "POST"),
        ("/sessions/<string:session_id>/icon-order", "icon_order", _icon_order, "POST"),
        ("/sessions/<string:session_id>/clue", "submit_clue", _submit_clue, "POST"),
        ("/sessions/<string:session_id>/guess", "submit_guess", _submit_guess, "POST"),
        (
            "/sessions/<string:session_id>/guess/timeout",
            "timeout_guess",
            _timeout_guess,
            "POST",
        ),
        ("/sessions/<string:session_id>/advance", "advance_round", _advance_round, "POST"),
        (
            "/sessions/<string:session_id>/turn-order",
            "update_turn_order",
            _update_turn_order,
            "POST",
        ),
        ("/sessions/<string:session_id>/reorder", "reorder_player", _reorder_player, "POST"),
        ("/sessions/<string:session_id>/shuffle", "shuffle", _shuffle, "POST"),
        ("/sessions/<string:session_id>/kick", "kick", _kick, "POST"),
        ("/sessions/<string:session_id>/leave", "leave", _leave, "POST"),
        ("/sessions/<string:session_id>/end", "end", _end, "POST"),
        ("/sessions/<string:session_id>/skip", "skip", _skip, "POST"),
    )
    for path, endpoint, view_func, method in routes:
        bp.add_url_rule(
            f"{URL_PREFIX}{path}",
            endpoint=f"api_phraseotomy_{endpoint}",
            view_func=view_func,
            methods=[method],
        )
