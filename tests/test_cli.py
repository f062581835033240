"""
Tests for the gemini-chat CLI, driven through click.testing.CliRunner with the
Gemini API faked by httpx.MockTransport.
"""

import json
from datetime import UTC, datetime, timedelta

import httpx
import pytest
from click.testing import CliRunner

from gemini_chat.cli import cli, cli_entry
from gemini_chat.client import GeminiClient
from gemini_chat.exceptions import RequestFailedError
from gemini_chat.history import ChatHistoryStore
from gemini_chat.models import ChatMessage, ChatRole, ChatThread
from gemini_chat.settings import API_KEY_ACCOUNT, LocalStore

from .conftest import (
    BrokenStream,
    FakeGemini,
    api_error_response,
    gemini_payload,
    json_response,
    models_response,
    sse_response,
)


@pytest.fixture
def fake_api(monkeypatch):
    fake = FakeGemini()
    http = httpx.AsyncClient(transport=httpx.MockTransport(fake))
    monkeypatch.setattr("gemini_chat.cli.GeminiClient", lambda: GeminiClient(http))
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    return fake


@pytest.fixture
def run(tmp_path):
    runner = CliRunner()
    data_dir = tmp_path / "data"

    def invoke(*args, input=None):
        return runner.invoke(cli, ["--data-dir", str(data_dir), *args], input=input)

    invoke.data_dir = data_dir
    return invoke


def store_key(run, key="test-key-12345"):
    LocalStore(run.data_dir / "settings.json").save_string(key, API_KEY_ACCOUNT)


def seed_history(run):
    base = datetime(2025, 2, 1, tzinfo=UTC)
    threads = [
        ChatThread(
            title=title,
            messages=[
                ChatMessage(role=ChatRole.USER, text=title),
                ChatMessage(role=ChatRole.ASSISTANT, text=answer, model_name="gemini-2.0-flash"),
            ],
            created_at=base + timedelta(minutes=minutes),
            updated_at=base + timedelta(minutes=minutes),
        )
        for minutes, title, answer in [
            (1, "Lisbon trip", "Visit Alfama."),
            (2, "Python help", "Use asyncio.gather."),
        ]
    ]
    ChatHistoryStore(run.data_dir / "chat-history.json").save_threads(threads)
    return threads


# ========================================================================
# config
# ========================================================================


class TestConfig:
    def test_set_and_show(self, run):
        assert run("config", "set-key", "AIza-secret-9876").exit_code == 0
        assert run("config", "set-model", "gemini-1.5-pro").exit_code == 0
        assert run("config", "set-safety", "balanced").exit_code == 0
        assert run("config", "set-system-prompt", "Be brief.").exit_code == 0

        result = run("config", "show")

        assert result.exit_code == 0
        assert "…9876" in result.output
        assert "AIza-secret" not in result.output
        assert "gemini-1.5-pro" in result.output
        assert "Balanced (Block medium-risk and above)" in result.output
        assert "Be brief." in result.output

    def test_set_key_prompts_when_omitted(self, run):
        result = run("config", "set-key", input="prompted-key\n")
        assert result.exit_code == 0
        assert LocalStore(run.data_dir / "settings.json").read_string(API_KEY_ACCOUNT) == (
            "prompted-key"
        )

    def test_clear_key(self, run):
        store_key(run)
        assert run("config", "clear-key").exit_code == 0
        assert "not set" in run("config", "show").output

    def test_unknown_safety_preset(self, run):
        result = run("config", "set-safety", "paranoid")
        assert result.exit_code == 2

    def test_defaults(self, run):
        result = run("config", "show")
        assert "gemini-2.0-flash" in result.output
        assert "Default (Use Gemini default safety behavior)" in result.output


# ========================================================================
# ask / models
# ========================================================================


class TestAsk:
    def test_streams_reply(self, run, fake_api):
        store_key(run)
        fake_api.stream.append(sse_response("Hel", "Hello", "Hello!"))

        result = run("ask", "Say", "hello")

        assert result.exit_code == 0, result.output
        assert "Hello!" in result.output
        body = fake_api.bodies_to(":streamGenerateContent")[0]
        assert body["contents"][-1]["parts"][0]["text"] == "Say hello"
        [thread] = ChatHistoryStore(run.data_dir / "chat-history.json").load_threads()
        assert [m.text for m in thread.messages] == ["Say hello", "Hello!"]

    def test_full_reply_after_dropped_stream_is_printed(self, run, fake_api):
        store_key(run)
        event = f"data: {json.dumps(gemini_payload('Paris is'))}\n\n"
        fake_api.stream.append(httpx.Response(200, stream=BrokenStream(event)))
        fake_api.generate.append(json_response(gemini_payload("The capital of France is Paris.")))

        result = run("ask", "Capital", "of", "France?")

        assert result.exit_code == 0, result.output
        assert "Paris is" in result.output
        assert "gemini-2.0-flash> The capital of France is Paris." in result.output
        [thread] = ChatHistoryStore(run.data_dir / "chat-history.json").load_threads()
        assert thread.messages[-1].text == "The capital of France is Paris."

    def test_api_key_option(self, run, fake_api):
        fake_api.stream.append(sse_response("Hi"))

        result = run("ask", "--api-key", "flag-key", "Hi")

        assert result.exit_code == 0, result.output
        assert fake_api.requests[0].url.params["key"] == "flag-key"

    def test_without_key(self, run, fake_api):
        result = run("ask", "Hi")

        assert result.exit_code == 1
        assert "Please enter your Gemini API key." in result.output
        assert fake_api.requests == []

    def test_api_error(self, run, fake_api):
        store_key(run)
        fake_api.stream.append(api_error_response(403, "API key not valid."))

        result = run("ask", "Hi")

        assert result.exit_code == 1
        assert "Gemini API error (403): API key not valid." in result.output

    def test_new_chat_flag(self, run, fake_api):
        store_key(run)
        seed_history(run)
        fake_api.stream.append(sse_response("Fresh"))

        result = run("ask", "--new", "Start over")

        assert result.exit_code == 0, result.output
        body = fake_api.bodies_to(":streamGenerateContent")[0]
        assert len(body["contents"]) == 1
        assert len(ChatHistoryStore(run.data_dir / "chat-history.json").load_threads()) == 3


class TestModels:
    def test_lists_models(self, run, fake_api):
        store_key(run)
        fake_api.models.append(models_response("gemini-1.5-pro", "gemini-2.0-flash"))

        result = run("models")

        assert result.exit_code == 0, result.output
        assert "Connected (2 models)" in result.output
        assert "* gemini-2.0-flash" in result.output

    def test_failure_exits_nonzero(self, run, fake_api):
        store_key(run)
        fake_api.models.append(api_error_response(400, "API key not valid."))

        result = run("models")

        assert result.exit_code == 1
        assert "Connection failed" in result.output

    def test_not_configured(self, run, fake_api):
        result = run("models")
        assert result.exit_code == 1
        assert "Please enter your Gemini API key." in result.output


# ========================================================================
# history
# ========================================================================


class TestHistory:
    def test_list_and_search(self, run):
        seed_history(run)

        listing = run("history", "list")
        assert listing.exit_code == 0
        assert listing.output.index("Python help") < listing.output.index("Lisbon trip")

        filtered = run("history", "list", "--search", "alfama")
        assert "Lisbon trip" in filtered.output
        assert "Python help" not in filtered.output

    def test_show(self, run):
        seed_history(run)

        result = run("history", "show", "2")

        assert result.exit_code == 0
        assert "# Lisbon trip" in result.output
        assert "Visit Alfama." in result.output

    def test_show_out_of_range(self, run):
        seed_history(run)
        result = run("history", "show", "9")
        assert result.exit_code == 2
        assert "no chat number 9" in result.output

    def test_delete(self, run):
        threads = seed_history(run)

        result = run("history", "delete", "1", input="y\n")

        assert result.exit_code == 0
        remaining = ChatHistoryStore(run.data_dir / "chat-history.json").load_threads()
        assert [thread.id for thread in remaining] == [threads[0].id]

    def test_delete_declined(self, run):
        seed_history(run)
        result = run("history", "delete", "1", input="n\n")
        assert result.exit_code == 1
        assert len(ChatHistoryStore(run.data_dir / "chat-history.json").load_threads()) == 2

    def test_export_formats(self, run, tmp_path):
        seed_history(run)
        md_path = tmp_path / "out" / "python.md"
        jsonl_path = tmp_path / "out" / "python.jsonl"

        assert run("history", "export", "1", "-o", str(md_path)).exit_code == 0
        result = run("history", "export", "1", "--format", "jsonl", "-o", str(jsonl_path))
        assert result.exit_code == 0

        assert md_path.read_text(encoding="utf-8").startswith("# Python help")
        records = [json.loads(line) for line in jsonl_path.read_text(encoding="utf-8").splitlines()]
        assert [record["type"] for record in records] == ["chat_metadata", "message", "message"]


# ========================================================================
# chat REPL
# ========================================================================


class TestChat:
    def test_conversation_and_commands(self, run, fake_api, tmp_path):
        store_key(run)
        fake_api.stream.append(sse_response("Hi", "Hi there!"))
        export_path = tmp_path / "chat.md"

        result = run(
            "chat",
            input=f"/help\nHello\n/history\n/export md {export_path}\n/model gemini-1.5-pro\n/quit\n",
        )

        assert result.exit_code == 0, result.output
        assert "/export [md|jsonl] [path]" in result.output
        assert "Hi there!" in result.output
        assert "Model: gemini-1.5-pro" in result.output
        assert "Hi there!" in export_path.read_text(encoding="utf-8")

    def test_new_open_and_delete(self, run, fake_api):
        store_key(run)
        seed_history(run)

        result = run("chat", input="/new\n/history\n/open 2\n/delete 1\n/bogus\n")

        assert result.exit_code == 0, result.output
        assert "Started a new chat." in result.output
        assert "Deleted:" in result.output
        assert "Unknown command: /bogus" in result.output

    def test_missing_key_is_reported(self, run, fake_api):
        result = run("chat", input="Hello\n")

        assert result.exit_code == 0
        assert "No API key." in result.output
        assert fake_api.requests == []

    def test_reply_error_is_shown(self, run, fake_api):
        store_key(run)
        fake_api.stream.append(api_error_response(500, "Internal error"))

        result = run("chat", input="Hello\n/quit\n")

        assert result.exit_code == 0
        assert "Gemini API error (500): Internal error" in result.output


class TestEntryPoint:
    def test_gemini_errors_exit_with_code_2(self, monkeypatch, capsys):
        def failing_cli():
            raise RequestFailedError("No models with generateContent support are available.")

        monkeypatch.setattr("gemini_chat.cli.cli", failing_cli)

        with pytest.raises(SystemExit) as excinfo:
            cli_entry()

        assert excinfo.value.code == 2
        assert "No models with generateContent support" in capsys.readouterr().err

    def test_unknown_log_level_still_runs(self, run):
        result = run("config", "show")
        assert result.exit_code == 0
        result = CliRunner().invoke(
            cli, ["--log-level", "chatty", "--data-dir", str(run.data_dir), "config", "show"]
        )
        assert result.exit_code == 0
