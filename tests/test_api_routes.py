import json

PREFIX = "/api/phraseotomy"


def _create_lobby(client, names=("Host", "Bea", "Cal", "Dee")):
    created = client.post(f"{PREFIX}/sessions", json={"player_name": names[0]}).get_json()
    player_ids = [created["player_id"]]
    for name in names[1:]:
        joined = client.post(
            f"{PREFIX}/lobbies/{created['lobby_code']}/join", json={"player_name": name}
        ).get_json()
        player_ids.append(joined["player_id"])
    return created["session_id"], player_ids


def test_health_and_metrics(client, services):
    assert client.get("/health").get_json() == {"status": "ok"}

    services.increment_metric("turn_sweeps")
    metrics = client.get("/api/ops/metrics").get_json()["metrics"]
    assert metrics["turn_sweeps"] == 1
    assert metrics["turn_scheduler_mode"] == "thread"
    assert metrics["round_advance_mode"] == "auto"
    assert metrics["turn_scheduler_thread_alive"] is False


def test_bootstrap_lists_playable_themes(client):
    payload = client.get(f"{PREFIX}/bootstrap").get_json()

    assert payload["game_name"] == "Phraseotomy"
    assert payload["min_players"] == 4
    assert [theme["id"] for theme in payload["themes"]] == ["travel", "food"]


def test_error_payload_shape(client):
    response = client.post(f"{PREFIX}/sessions", json={"player_name": ""})
    assert response.status_code == 400
    payload = response.get_json()
    assert payload["code"] == "invalid_name"
    assert payload["kind"] == "validation"
    assert payload["error"] == payload["message"]
    # Keys keep the order the payload was built in.
    assert list(json.loads(response.get_data(as_text=True))) == [
        "code",
        "message",
        "kind",
        "details",
        "error",
    ]

    missing = client.get(f"{PREFIX}/sessions/{'a' * 32}/state?player_id=nobody")
    assert missing.status_code == 404
    assert missing.get_json()["kind"] == "terminal"
    assert missing.get_json()["code"] == "session_not_found"


def test_lobby_flow_over_http(client, services):
    session_id, player_ids = _create_lobby(client)
    host_id, bea = player_ids[0], player_ids[1]

    lobby = client.get(f"{PREFIX}/sessions/{session_id}/lobby?player_id={bea}").get_json()
    assert [player["turn_order"] for player in lobby["players"]] == [1, 2, 3, 4]
    assert lobby["viewer"]["can_start"] is False

    forbidden = client.post(f"{PREFIX}/sessions/{session_id}/start", json={"player_id": bea})
    assert forbidden.status_code == 403
    assert forbidden.get_json()["code"] == "host_only"

    started = client.post(f"{PREFIX}/sessions/{session_id}/start", json={"player_id": host_id})
    assert started.status_code == 200
    assert started.get_json()["storyteller_id"] == host_id

    metrics = services.get_runtime_metrics()
    assert metrics["sessions_created"] == 1
    assert metrics["games_started"] == 1


def test_round_over_http(client, game_service):
    session_id, player_ids = _create_lobby(client)
    host_id = player_ids[0]
    client.post(f"{PREFIX}/sessions/{session_id}/start", json={"player_id": host_id})

    theme = client.post(
        f"{PREFIX}/sessions/{session_id}/theme",
        json={"player_id": host_id, "theme_id": "travel"},
    )
    assert theme.get_json()["theme"]["id"] == "travel"

    turn = client.post(f"{PREFIX}/sessions/{session_id}/turn", json={"player_id": host_id})
    assert turn.get_json()["whisp"] == "Passport"

    clue = client.post(
        f"{PREFIX}/sessions/{session_id}/clue",
        json={"player_id": host_id, "recording_url": "https://cdn.example.com/a.webm"},
    )
    assert clue.get_json()["already_submitted"] is False

    guesser_state = client.get(
        f"{PREFIX}/sessions/{session_id}/state?player_id={player_ids[1]}"
    ).get_json()
    assert "secret" not in guesser_state["current_turn"]

    results = [
        client.post(
            f"{PREFIX}/sessions/{session_id}/guess",
            json={"player_id": player_id, "round_number": 1, "guess": "Passport"},
        ).get_json()
        for player_id in player_ids[1:]
    ]
    assert results[-1]["all_players_answered"] is True
    assert results[-1]["next_round"]["storyteller_id"] == player_ids[1]

    duplicate = client.post(
        f"{PREFIX}/sessions/{session_id}/guess",
        json={"player_id": player_ids[1], "round_number": 1, "guess": "Passport"},
    )
    assert duplicate.status_code == 409

    stale_advance = client.post(
        f"{PREFIX}/sessions/{session_id}/advance",
        json={"player_id": host_id, "from_round": 1},
    )
    assert stale_advance.get_json() == {"ok": True, "advanced": False}


def test_skip_requires_identity(client):
    session_id, player_ids = _create_lobby(client)
    client.post(f"{PREFIX}/sessions/{session_id}/start", json={"player_id": player_ids[0]})

    anonymous = client.post(f"{PREFIX}/sessions/{session_id}/skip", json={"reason": "stuck"})
    assert anonymous.status_code == 400
    assert anonymous.get_json()["code"] == "missing_identity"

    skipped = client.post(
        f"{PREFIX}/sessions/{session_id}/skip",
        json={"player_id": player_ids[2], "reason": "stuck", "expected_round": 1},
    ).get_json()
    assert skipped["skipped"] is True
    assert skipped["next_round"]["round_number"] == 2

    again = client.post(
        f"{PREFIX}/sessions/{session_id}/skip",
        json={"player_id": player_ids[2], "reason": "stuck", "expected_round": 1},
    ).get_json()
    assert again["skipped"] is False


def test_kick_leave_and_end(client):
    session_id, player_ids = _create_lobby(client)
    host_id, bea, cal = player_ids[:3]

    kicked = client.post(
        f"{PREFIX}/sessions/{session_id}/kick",
        json={"player_id": host_id, "player_id_to_kick": cal},
    )
    assert kicked.get_json()["kicked_player_id"] == cal

    left = client.post(f"{PREFIX}/sessions/{session_id}/leave", json={"player_id": bea})
    assert left.get_json()["left"] is True

    host_leave = client.post(f"{PREFIX}/sessions/{session_id}/leave", json={"player_id": host_id})
    assert host_leave.status_code == 403

    ended = client.post(f"{PREFIX}/sessions/{session_id}/end", json={"player_id": host_id})
    assert ended.get_json() == {"ok": True, "ended": True}

    gone = client.get(f"{PREFIX}/sessions/{session_id}/lobby?player_id={host_id}")
    assert gone.status_code == 404


def test_changes_handshake_and_table_filter(client):
    session_id, player_ids = _create_lobby(client)

    handshake = client.get(f"{PREFIX}/sessions/{session_id}/changes").get_json()
    assert handshake["events"] == []
    cursor = handshake["cursor"]

    client.post(f"{PREFIX}/sessions/{session_id}/start", json={"player_id": player_ids[0]})

    changes = client.get(
        f"{PREFIX}/sessions/{session_id}/changes?after={cursor}&tables=turns"
    ).get_json()
    assert [event["table"] for event in changes["events"]] == ["turns"]
    assert changes["cursor"] > cursor

    bad = client.get(f"{PREFIX}/sessions/{session_id}/changes?tables=secrets")
    assert bad.status_code == 400
    assert bad.get_json()["code"] == "unknown_table"


def test_channel_broadcast_relay(client, services):
    channel = "game:abc123"
    cursor = client.get(f"{PREFIX}/channels/{channel}/messages").get_json()["cursor"]

    sent = client.post(
        f"{PREFIX}/channels/{channel}/messages",
        json={"event": "guess_submitted", "payload": {"round": 1}, "sender_id": "p2"},
    )
    assert sent.get_json()["ok"] is True

    polled = client.get(f"{PREFIX}/channels/{channel}/messages?after={cursor}").get_json()
    assert polled["events"][0]["message"]["event"] == "guess_submitted"
    assert polled["events"][0]["message"]["sender_id"] == "p2"
    assert services.get_runtime_metrics()["broadcasts_relayed"] == 1

    invalid = client.post(f"{PREFIX}/channels/{channel}/messages", json={"event": "reveal"})
    assert invalid.status_code == 400
    assert invalid.get_json()["code"] == "invalid_broadcast"

    unknown = client.get(f"{PREFIX}/channels/session:abc123/messages")
    assert unknown.status_code == 400
    assert unknown.get_json()["code"] == "unknown_channel"
