"""
Tests for the command boundary and the CLI argument parsing.

## Test Perspectives Table

| Case ID | Input / Precondition | Perspective (Equivalence / Boundary) | Expected Result | Notes |
|---------|---------------------|---------------------------------------|-----------------|-------|
| TC-CMD-N-01 | CREATE_SESSION valid | Equivalence – normal | ok, session id | - |
| TC-CMD-A-01 | unknown action | Abnormal – routing | UnknownCommand | - |
| TC-CMD-B-01 | quota 0 | Boundary – validation | ValidationError, no write | - |
| TC-CMD-B-02 | delay max < min | Boundary – validation | ValidationError | - |
| TC-CMD-A-02 | missing session | Abnormal – lookup | SessionNotFoundError dict | - |
| TC-CMD-N-02 | settings commands | Equivalence – normal | persisted, seconds -> ms | - |
| TC-CLI-N-01 | engine strings | Equivalence – parsing | engine config dict | - |
| TC-CLI-A-01 | bad engine string | Abnormal – parsing | ArgumentTypeError | - |
"""

import argparse

import pytest

from harvester.main import build_parser, parse_engine_arg
from harvester.storage.models import DelayRange, SessionStatus, TaskStatus

GOOGLE = {"engine_id": "google", "engine_name": "Google", "country_code": "us"}


async def _create(app, **extra) -> str:
    result = await app.commands.dispatch(
        "CREATE_SESSION", {"name": "cmd", "queries": ["coffee", "tea"], "configs": [GOOGLE], **extra}
    )
    assert result["ok"] is True
    return result["session_id"]


@pytest.mark.integration
class TestDispatch:
    @pytest.mark.asyncio
    async def test_create_session(self, harvester_app) -> None:
        # Given/When: A valid create command with delays in seconds
        session_id = await _create(harvester_app, quota=30, delay_min_s=1.5, delay_max_s=3)

        # Then: Stored with millisecond delays
        session = await harvester_app.db.get_session(session_id)
        assert len(session.tasks) == 2
        assert session.quota == 30
        assert session.delay_range == DelayRange(min_ms=1500, max_ms=3000)

    @pytest.mark.asyncio
    async def test_unknown_action(self, harvester_app) -> None:
        result = await harvester_app.commands.dispatch("REBOOT", {})

        assert result["ok"] is False
        assert result["error_type"] == "UnknownCommand"

    @pytest.mark.asyncio
    async def test_invalid_payload_never_reaches_engine(self, harvester_app) -> None:
        # Given: A quota of zero
        payload = {"queries": ["coffee"], "configs": [GOOGLE], "quota": 0}

        # When: Dispatching
        result = await harvester_app.commands.dispatch("CREATE_SESSION", payload)

        # Then: Rejected with field details, nothing stored
        assert result["ok"] is False
        assert result["error_type"] == "ValidationError"
        assert result["details"][0]["loc"] == ("quota",)
        assert await harvester_app.sessions.list_sessions() == []

    @pytest.mark.asyncio
    async def test_missing_queries_rejected(self, harvester_app) -> None:
        result = await harvester_app.commands.dispatch("CREATE_SESSION", {"configs": [GOOGLE]})
        assert result["error_type"] == "ValidationError"

    @pytest.mark.asyncio
    async def test_reversed_delay_rejected(self, harvester_app) -> None:
        session_id = await _create(harvester_app)

        result = await harvester_app.commands.dispatch(
            "UPDATE_DELAY", {"session_id": session_id, "min_s": 10, "max_s": 5}
        )

        assert result["error_type"] == "ValidationError"

    @pytest.mark.asyncio
    async def test_missing_session(self, harvester_app) -> None:
        result = await harvester_app.commands.dispatch("START", {"session_id": "sess_nope"})

        assert result == {
            "ok": False,
            "error_type": "SessionNotFoundError",
            "error": "Session not found: sess_nope",
            "details": {"session_id": "sess_nope"},
        }

    @pytest.mark.asyncio
    async def test_settings_commands(self, harvester_app) -> None:
        # Given: A session
        session_id = await _create(harvester_app)
        commands = harvester_app.commands

        # When: Editing quota, delay, proxies and tasks
        quota = await commands.dispatch("UPDATE_QUOTA", {"session_id": session_id, "quota": 12})
        delay = await commands.dispatch(
            "UPDATE_DELAY", {"session_id": session_id, "min_s": 2, "max_s": 4}
        )
        proxies = await commands.dispatch(
            "UPDATE_PROXIES",
            {"session_id": session_id, "use_proxies": True, "proxy_text": "10.0.0.1:8080:u:pw"},
        )
        removed = await commands.dispatch("REMOVE_TASK", {"session_id": session_id, "task_index": 1})
        added = await commands.dispatch(
            "ADD_ITEMS", {"session_id": session_id, "new_queries": ["juice"]}
        )

        # Then: Each answer reflects the stored state
        assert quota == {"ok": True, "quota": 12}
        assert delay == {"ok": True, "delay_range": {"min_ms": 2000, "max_ms": 4000}}
        assert proxies == {"ok": True, "proxies": 1}
        assert removed == {"ok": True}
        assert added["tasks"] == 3
        session = await harvester_app.db.get_session(session_id)
        assert [t.status for t in session.tasks] == [
            TaskStatus.OPEN,
            TaskStatus.CANCELLED,
            TaskStatus.OPEN,
        ]

    @pytest.mark.asyncio
    async def test_queries(self, harvester_app) -> None:
        session_id = await _create(harvester_app)

        sessions = await harvester_app.commands.dispatch("GET_SESSIONS")
        status = await harvester_app.commands.dispatch("GET_SESSION_STATUS", {"session_id": session_id})
        tasks = await harvester_app.commands.dispatch("GET_TASKS", {"session_id": session_id})

        assert [row["id"] for row in sessions["sessions"]] == [session_id]
        assert status["status"] == SessionStatus.OPEN.value
        assert status["current_query"] == "coffee"
        assert [t["term"] for t in tasks["tasks"]] == ["coffee", "tea"]

    @pytest.mark.asyncio
    async def test_pause_and_delete(self, harvester_app) -> None:
        session_id = await _create(harvester_app)

        paused = await harvester_app.commands.dispatch("PAUSE", {"session_id": session_id})
        deleted = await harvester_app.commands.dispatch("DELETE_SESSION", {"session_id": session_id})

        assert paused == {"ok": True, "status": "PAUSED"}
        assert deleted == {"ok": True}
        assert await harvester_app.db.get_session(session_id) is None

    @pytest.mark.asyncio
    async def test_captcha_pause_command_arms_timer(self, harvester_app) -> None:
        # Given: A session
        session_id = await _create(harvester_app)

        # When: The UI reports a CAPTCHA pause
        result = await harvester_app.commands.dispatch(
            "PAUSE", {"session_id": session_id, "reason": "CAPTCHA"}
        )

        # Then: Parked, with a pending timer as its way out
        assert result == {"ok": True, "status": "PAUSED_CAPTCHA"}
        assert await harvester_app.db.has_timer(f"retry_session_{session_id}")

    @pytest.mark.asyncio
    async def test_actions_listed(self, harvester_app) -> None:
        assert "CREATE_SESSION" in harvester_app.commands.actions
        assert "GET_TASKS" in harvester_app.commands.actions


@pytest.mark.unit
class TestCli:
    @pytest.mark.parametrize(
        "arg,expected",
        [
            ("google:us", {"engine_id": "google", "country_code": "us", "lang_code": None}),
            ("Bing:DE:de", {"engine_id": "bing", "country_code": "de", "lang_code": "de"}),
            (
                "google:de:de:www.google.de:Berlin,Germany",
                {"domain": "www.google.de", "location": "Berlin,Germany"},
            ),
        ],
    )
    def test_parse_engine_arg(self, arg: str, expected: dict) -> None:
        parsed = parse_engine_arg(arg)
        for key, value in expected.items():
            assert parsed[key] == value

    @pytest.mark.parametrize("arg", ["yahoo:us", "google", "google:"])
    def test_parse_engine_arg_rejects(self, arg: str) -> None:
        with pytest.raises(argparse.ArgumentTypeError):
            parse_engine_arg(arg)

    def test_create_arguments(self) -> None:
        args = build_parser().parse_args(
            ["create", "-q", "coffee", "-q", "tea", "-e", "google:us", "--quota", "20",
             "--delay", "5", "10", "--html"]
        )

        assert args.query == ["coffee", "tea"]
        assert args.engine[0]["engine_id"] == "google"
        assert args.quota == 20
        assert args.delay == [5.0, 10.0]
        assert args.html is True
        assert args.screenshots is False
