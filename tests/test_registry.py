# tests/test_registry.py
"""Tests for the bot registry: CRUD, lifecycle, command edits and persistence."""
import asyncio
import json
import re
import time

import pytest
from unittest.mock import patch

from bothost.config import settings
from bothost.core.dispatcher import CommandDispatcher
from bothost.core.domain import BotStatus
from bothost.core.errors import (
    BotNotFoundError,
    CommandNotFoundError,
    InvalidCommandError,
    InvalidCredentialError,
)
from bothost.core.lifecycle import LifecycleController
from bothost.core.registry import BotRegistry, new_bot_id
from bothost.infra.metrics import get_metrics_collector
from bothost.infra.snapshot_store import JsonFileSnapshotStore
from tests.fakes import BrokenStore, FakeConnectivity, OTHER_VALID_TOKEN, VALID_TOKEN


def _read(path):
    return json.loads(path.read_text(encoding="utf-8"))


class TestBotIds:
    def test_format(self):
        assert re.fullmatch(r"bot_[0-9a-f]{12}", new_bot_id())

    def test_unique(self):
        assert len({new_bot_id() for _ in range(200)}) == 200


# ============================================================================
# Create / delete
# ============================================================================

class TestCreate:
    @pytest.mark.asyncio
    async def test_create_registers_stopped_bot(self, registry, store):
        bot_id = await registry.create(VALID_TOKEN, "Echo")

        assert registry.status(bot_id) == BotStatus.STOPPED
        assert [b.name for b in registry.list()] == ["Echo"]
        assert registry.get_commands(bot_id) == {"start": settings.default_start_greeting}

        bots = _read(store.bots_path)
        assert bots[bot_id] == {"credential": VALID_TOKEN, "name": "Echo", "status": "stopped"}

    @pytest.mark.asyncio
    async def test_name_defaults_to_platform_username(self, registry):
        bot_id = await registry.create(VALID_TOKEN, "  ")
        assert registry.get(bot_id).display_name == "fake_bot"

    @pytest.mark.asyncio
    async def test_invalid_credential_leaves_no_trace(self, registry, store):
        with pytest.raises(InvalidCredentialError, match="Invalid Telegram token"):
            await registry.create("nope", "Broken")

        assert registry.list() == []
        assert not store.bots_path.exists()

    @pytest.mark.asyncio
    async def test_blank_credential_rejected(self, registry, connectivity):
        with pytest.raises(InvalidCredentialError):
            await registry.create("   ")
        assert connectivity.open_calls == 0

    @pytest.mark.asyncio
    async def test_credential_check_timeout(self, connectivity, store):
        connectivity.verify_delay = 1.0
        registry = BotRegistry(connectivity, store, credential_check_timeout=0.05)

        with pytest.raises(InvalidCredentialError, match="timed out"):
            await registry.create(VALID_TOKEN, "Slow")
        assert registry.list() == []

    @pytest.mark.asyncio
    async def test_unexpected_verify_error_is_invalid_credential(self, connectivity, store):
        async def explode(credential):
            raise OSError("dns failure")

        connectivity.verify_credential = explode
        registry = BotRegistry(connectivity, store)

        with pytest.raises(InvalidCredentialError, match="dns failure"):
            await registry.create(VALID_TOKEN)

    @pytest.mark.asyncio
    async def test_listing_never_contains_credential(self, registry):
        await registry.create(VALID_TOKEN, "Echo")
        summary = registry.list()[0]
        assert VALID_TOKEN not in repr(summary)


class TestDelete:
    @pytest.mark.asyncio
    async def test_delete_running_bot(self, registry, connectivity, store):
        bot_id = await registry.create(VALID_TOKEN, "Echo")
        await registry.start(bot_id)
        session = connectivity.latest(bot_id)

        await registry.delete(bot_id)

        assert session.closed
        with pytest.raises(BotNotFoundError):
            registry.status(bot_id)
        assert registry.get_commands(bot_id) == {}
        assert bot_id not in _read(store.bots_path)
        assert bot_id not in _read(store.commands_path)

    @pytest.mark.asyncio
    async def test_delete_drops_bot_metrics(self, registry, connectivity):
        metrics = get_metrics_collector()
        bot_id = await registry.create(VALID_TOKEN, "Echo")
        other = await registry.create(OTHER_VALID_TOKEN, "Other")
        await registry.start(bot_id)
        await registry.start(other)
        await connectivity.latest(bot_id).deliver("ping")

        await registry.delete(bot_id)

        series = {**metrics.get_metrics()["counters"], **metrics.get_metrics()["histograms"]}
        assert not [key for key in series if f"bot_id={bot_id}" in key]
        assert metrics.get_counter("sessions_started_total", bot_id=other) == 1

    @pytest.mark.asyncio
    async def test_delete_unknown(self, registry):
        with pytest.raises(BotNotFoundError):
            await registry.delete("bot_missing")


# ============================================================================
# Lifecycle
# ============================================================================

class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_stop_persist_status(self, registry, store):
        bot_id = await registry.create(VALID_TOKEN, "Echo")

        result = await registry.start(bot_id)
        assert result.ok
        assert result.status == BotStatus.RUNNING
        assert _read(store.bots_path)[bot_id]["status"] == "running"

        result = await registry.stop(bot_id)
        assert result.status == BotStatus.STOPPED
        assert _read(store.bots_path)[bot_id]["status"] == "stopped"

    @pytest.mark.asyncio
    async def test_start_twice_keeps_one_session(self, registry, connectivity):
        bot_id = await registry.create(VALID_TOKEN, "Echo")
        await registry.start(bot_id)
        await registry.start(bot_id)

        assert registry.status(bot_id) == BotStatus.RUNNING
        assert connectivity.open_calls == 1
        assert len(connectivity.live_sessions(bot_id)) == 1

    @pytest.mark.asyncio
    async def test_stop_twice_is_noop(self, registry):
        bot_id = await registry.create(VALID_TOKEN, "Echo")
        await registry.stop(bot_id)
        result = await registry.stop(bot_id)
        assert result.ok
        assert result.status == BotStatus.STOPPED

    @pytest.mark.asyncio
    async def test_toggle(self, registry, connectivity):
        bot_id = await registry.create(VALID_TOKEN, "Echo")

        assert (await registry.toggle(bot_id)).status == BotStatus.RUNNING
        assert (await registry.toggle(bot_id)).status == BotStatus.STOPPED
        assert connectivity.live_sessions(bot_id) == []

    @pytest.mark.asyncio
    async def test_start_failure_reports_error(self, registry, connectivity, store):
        bot_id = await registry.create(VALID_TOKEN, "Echo")
        connectivity.fail_open = True

        result = await registry.start(bot_id)

        assert not result.ok
        assert result.status == BotStatus.STOPPED
        assert "Unauthorized" in result.error
        assert registry.get(bot_id).session is None
        assert _read(store.bots_path)[bot_id]["status"] == "stopped"

    @pytest.mark.asyncio
    async def test_start_unknown(self, registry):
        with pytest.raises(BotNotFoundError):
            await registry.start("bot_missing")

    @pytest.mark.asyncio
    async def test_bots_are_independent(self, registry, connectivity):
        a = await registry.create(VALID_TOKEN, "A")
        b = await registry.create(OTHER_VALID_TOKEN, "B")
        await registry.start(a)
        await registry.start(b)

        await registry.stop(a)

        assert registry.status(b) == BotStatus.RUNNING
        assert await connectivity.latest(b).deliver("ping") != []


# ============================================================================
# Commands
# ============================================================================

class TestCommands:
    @pytest.mark.asyncio
    async def test_set_command_on_stopped_bot(self, registry, connectivity, store):
        bot_id = await registry.create(VALID_TOKEN, "Echo")

        name = await registry.set_command(bot_id, "/echo", "{{ args_text }}")

        assert name == "echo"
        assert registry.get_commands(bot_id)["echo"] == "{{ args_text }}"
        assert connectivity.open_calls == 0
        assert _read(store.commands_path)[bot_id]["echo"] == "{{ args_text }}"

    @pytest.mark.asyncio
    async def test_set_command_restarts_running_bot_once(self, registry, connectivity):
        bot_id = await registry.create(VALID_TOKEN, "Echo")
        await registry.start(bot_id)
        old = connectivity.latest(bot_id)

        await registry.set_command(bot_id, "echo", "{{ args_text }}")

        new = connectivity.latest(bot_id)
        assert connectivity.open_calls == 2
        assert old.closed and not new.closed
        assert registry.status(bot_id) == BotStatus.RUNNING
        assert await new.deliver("echo", "hi", "there") == ["hi there"]

    @pytest.mark.asyncio
    async def test_overwrite_replaces_logic(self, registry, connectivity):
        bot_id = await registry.create(VALID_TOKEN, "Echo")
        await registry.start(bot_id)
        await registry.set_command(bot_id, "greet", "Hello")
        await registry.set_command(bot_id, "greet", "Howdy")

        assert await connectivity.latest(bot_id).deliver("greet") == ["Howdy"]

    @pytest.mark.asyncio
    async def test_set_command_unknown_bot(self, registry):
        with pytest.raises(BotNotFoundError):
            await registry.set_command("bot_missing", "echo", "x")

    @pytest.mark.asyncio
    async def test_set_command_empty_name(self, registry):
        bot_id = await registry.create(VALID_TOKEN, "Echo")
        with pytest.raises(InvalidCommandError):
            await registry.set_command(bot_id, " / ", "x")

    @pytest.mark.asyncio
    async def test_invalid_logic_not_stored(self, registry, connectivity):
        bot_id = await registry.create(VALID_TOKEN, "Echo")
        await registry.start(bot_id)

        with pytest.raises(InvalidCommandError):
            await registry.set_command(bot_id, "bad", "{{ unclosed")

        assert "bad" not in registry.get_commands(bot_id)
        assert connectivity.open_calls == 1

    @pytest.mark.asyncio
    async def test_get_commands_unknown_bot_is_empty(self, registry):
        assert registry.get_commands("bot_missing") == {}

    @pytest.mark.asyncio
    async def test_get_commands_returns_copy(self, registry):
        bot_id = await registry.create(VALID_TOKEN, "Echo")
        registry.get_commands(bot_id)["sneaky"] = "x"
        assert "sneaky" not in registry.get_commands(bot_id)

    @pytest.mark.asyncio
    async def test_remove_command(self, registry, connectivity):
        bot_id = await registry.create(VALID_TOKEN, "Echo")
        await registry.set_command(bot_id, "echo", "x")
        await registry.start(bot_id)

        removed = await registry.remove_command(bot_id, "/echo")

        assert removed == "echo"
        assert "echo" not in registry.get_commands(bot_id)
        assert await connectivity.latest(bot_id).deliver("echo") == []

    @pytest.mark.asyncio
    async def test_remove_command_drops_its_metrics(self, registry, connectivity):
        metrics = get_metrics_collector()
        bot_id = await registry.create(VALID_TOKEN, "Echo")
        await registry.set_command(bot_id, "echo", "x")
        await registry.start(bot_id)
        await connectivity.latest(bot_id).deliver("echo")
        await connectivity.latest(bot_id).deliver("ping")
        assert metrics.get_counter("commands_dispatched_total", bot_id=bot_id, command="echo") == 1

        await registry.remove_command(bot_id, "echo")

        assert metrics.get_counter("commands_dispatched_total", bot_id=bot_id, command="echo") == 0
        assert f"handler_duration_seconds{{bot_id={bot_id},command=echo}}" not in metrics.get_metrics()["histograms"]
        assert metrics.get_counter("commands_dispatched_total", bot_id=bot_id, command="ping") == 1

    @pytest.mark.asyncio
    async def test_remove_unknown_command(self, registry):
        bot_id = await registry.create(VALID_TOKEN, "Echo")
        with pytest.raises(CommandNotFoundError):
            await registry.remove_command(bot_id, "nope")

    @pytest.mark.asyncio
    async def test_restart_failure_after_edit_is_reported_via_status(self, registry, connectivity):
        bot_id = await registry.create(VALID_TOKEN, "Echo")
        await registry.start(bot_id)
        connectivity.fail_open = True

        await registry.set_command(bot_id, "echo", "x")

        assert "echo" in registry.get_commands(bot_id)
        assert registry.status(bot_id) == BotStatus.STOPPED


# ============================================================================
# Handler errors
# ============================================================================

class TestHandlerErrors:
    @pytest.mark.asyncio
    async def test_failing_handler_keeps_bot_running(self, registry, connectivity):
        bot_id = await registry.create(VALID_TOKEN, "Echo")
        await registry.set_command(bot_id, "boom", "{{ missing_var }}")
        await registry.start(bot_id)
        session = connectivity.latest(bot_id)

        replies = await session.deliver("boom")

        assert replies[0].startswith("⚠️ Error in /boom")
        assert registry.status(bot_id) == BotStatus.RUNNING
        assert (await session.deliver("ping"))[0] == "🏓 Pong!"

    @staticmethod
    async def _two_bots(connectivity, store, handler_timeout):
        controller = LifecycleController(connectivity, CommandDispatcher(handler_timeout=handler_timeout))
        registry = BotRegistry(connectivity, store, controller)
        heavy = await registry.create(VALID_TOKEN, "Heavy")
        other = await registry.create(OTHER_VALID_TOKEN, "Other")
        await registry.set_command(
            heavy,
            "heavy",
            "{% for i in range(3000) %}{% for j in range(3000) %}{% endfor %}{% endfor %}done",
        )
        await registry.start(heavy)
        await registry.start(other)
        return connectivity.latest(heavy), connectivity.latest(other)

    @staticmethod
    async def _timed(coro):
        started = time.monotonic()
        result = await coro
        return result, time.monotonic() - started

    @pytest.mark.asyncio
    async def test_slow_render_times_out_without_blocking_other_bots(self, connectivity, store):
        heavy, other = await self._two_bots(connectivity, store, handler_timeout=0.2)

        def slow_render(template, variables, budget, limit=None):
            time.sleep(0.6)
            return "done"

        with patch("bothost.core.actions._render_sync", slow_render):
            (heavy_replies, heavy_elapsed), (ping_replies, ping_elapsed) = await asyncio.gather(
                self._timed(heavy.deliver("heavy")),
                self._timed(other.deliver("ping")),
            )

        assert heavy_replies == ["⚠️ Error in /heavy: timed out after 0.2s"]
        assert heavy_elapsed < 0.5
        assert ping_replies[0] == "🏓 Pong!"
        assert ping_elapsed < 0.15

    @pytest.mark.asyncio
    async def test_nested_loop_template_fails_fast(self, connectivity, store):
        heavy, other = await self._two_bots(connectivity, store, handler_timeout=0.2)

        (heavy_replies, heavy_elapsed), (ping_replies, ping_elapsed) = await asyncio.gather(
            self._timed(heavy.deliver("heavy")),
            self._timed(other.deliver("ping")),
        )

        assert len(heavy_replies) == 1
        assert heavy_replies[0].startswith("⚠️ Error in /heavy: template error")
        assert heavy_elapsed < 0.2
        assert ping_replies[0] == "🏓 Pong!"
        assert ping_elapsed < 0.15


# ============================================================================
# Persistence
# ============================================================================

class TestPersistence:
    @pytest.mark.asyncio
    async def test_round_trip(self, registry, store, connectivity):
        a = await registry.create(VALID_TOKEN, "A")
        b = await registry.create(OTHER_VALID_TOKEN, "B")
        await registry.set_command(a, "echo", {"action": "reply", "text": "{{ args_text }}"})
        await registry.start(b)

        reloaded = BotRegistry(connectivity, store)
        count = await reloaded.load(restore=False)

        assert count == 2
        assert {s.id: s.name for s in reloaded.list()} == {a: "A", b: "B"}
        assert reloaded.get(a).credential == VALID_TOKEN
        assert reloaded.get_commands(a) == registry.get_commands(a)
        assert reloaded.status(a) == BotStatus.STOPPED
        assert reloaded.status(b) == BotStatus.RUNNING
        assert reloaded.get(b).session is None

    @pytest.mark.asyncio
    async def test_restore_starts_running_bots(self, registry, store):
        a = await registry.create(VALID_TOKEN, "A")
        b = await registry.create(OTHER_VALID_TOKEN, "B")
        await registry.start(b)

        fresh = FakeConnectivity()
        reloaded = BotRegistry(fresh, store)
        await reloaded.load()

        assert reloaded.get(b).is_live
        assert not reloaded.get(a).is_live
        assert fresh.open_calls == 1

    @pytest.mark.asyncio
    async def test_failed_restore_is_demoted(self, store):
        store.save(
            {"bot_old": {"credential": "revoked", "name": "Old", "status": "running"}},
            {"bot_old": {}},
        )
        reloaded = BotRegistry(FakeConnectivity(), store)
        await reloaded.load()

        assert reloaded.status("bot_old") == BotStatus.STOPPED
        assert _read(store.bots_path)["bot_old"]["status"] == "stopped"

    @pytest.mark.asyncio
    async def test_restore_opens_sessions_concurrently(self, store):
        tokens = [f"{n}00000:token-{n}" for n in range(1, 6)]
        store.save(
            {f"bot_{n}": {"credential": t, "name": f"B{n}", "status": "running"} for n, t in enumerate(tokens)},
            {},
        )
        fake = FakeConnectivity(valid_tokens=tokens)
        fake.open_delay = 0.3
        reloaded = BotRegistry(fake, store)
        await reloaded.load(restore=False)

        started = time.monotonic()
        count = await reloaded.restore()
        elapsed = time.monotonic() - started

        assert count == 5
        assert fake.open_calls == 5
        assert elapsed < 0.9
        assert all(reloaded.get(f"bot_{n}").is_live for n in range(5))

    @pytest.mark.asyncio
    async def test_restore_mixed_results_saved_once(self, store):
        store.save(
            {
                "bot_ok": {"credential": VALID_TOKEN, "name": "Ok", "status": "running"},
                "bot_bad": {"credential": "revoked", "name": "Bad", "status": "running"},
            },
            {},
        )
        reloaded = BotRegistry(FakeConnectivity(), store)
        await reloaded.load(restore=False)

        with patch.object(store, "save", wraps=store.save) as save:
            count = await reloaded.restore()

        assert count == 1
        assert save.call_count == 1
        assert reloaded.status("bot_ok") == BotStatus.RUNNING
        assert reloaded.status("bot_bad") == BotStatus.STOPPED
        saved = _read(store.bots_path)
        assert saved["bot_ok"]["status"] == "running"
        assert saved["bot_bad"]["status"] == "stopped"

    @pytest.mark.asyncio
    async def test_restore_with_nothing_pending(self, registry, store):
        await registry.create(VALID_TOKEN, "Idle")
        with patch.object(store, "save", wraps=store.save) as save:
            assert await registry.restore() == 0
        save.assert_not_called()

    @pytest.mark.asyncio
    async def test_legacy_snapshot_fields(self, store):
        store.bots_path.write_text(json.dumps({
            "bot_legacy": {"token": VALID_TOKEN, "name": "Legacy", "status": "RUN"},
            "bot_blank": {"name": "No credential", "status": "STOP"},
        }), encoding="utf-8")

        reloaded = BotRegistry(FakeConnectivity(), store)
        count = await reloaded.load(restore=False)

        assert count == 1
        record = reloaded.get("bot_legacy")
        assert record.credential == VALID_TOKEN
        assert record.status == BotStatus.RUNNING
        assert reloaded.get_commands("bot_legacy") == {}

    @pytest.mark.asyncio
    async def test_shutdown_keeps_persisted_running(self, registry, connectivity, store):
        bot_id = await registry.create(VALID_TOKEN, "Echo")
        await registry.start(bot_id)
        session = connectivity.latest(bot_id)

        await registry.shutdown()

        assert session.closed
        assert _read(store.bots_path)[bot_id]["status"] == "running"

    @pytest.mark.asyncio
    async def test_save_failure_keeps_memory_state(self, connectivity):
        broken = BrokenStore()
        registry = BotRegistry(connectivity, broken)

        bot_id = await registry.create(VALID_TOKEN, "Echo")
        await registry.set_command(bot_id, "echo", "x")

        assert broken.save_calls == 2
        assert registry.get_commands(bot_id)["echo"] == "x"

    @pytest.mark.asyncio
    async def test_load_from_missing_files(self, tmp_path):
        store = JsonFileSnapshotStore(tmp_path / "none" / "bots.json", tmp_path / "none" / "commands.json")
        registry = BotRegistry(FakeConnectivity(), store)
        assert await registry.load() == 0
        assert registry.list() == []


# ============================================================================
# End-to-end scenario
# ============================================================================

class TestScenario:
    @pytest.mark.asyncio
    async def test_create_start_edit_delete(self, registry, connectivity):
        bot_id = await registry.create(VALID_TOKEN, "Echo")
        assert registry.status(bot_id) == BotStatus.STOPPED

        await registry.start(bot_id)
        replies = await connectivity.latest(bot_id).deliver("ping")
        assert replies[0] == "🏓 Pong!"
        assert re.fullmatch(r"Latency: \d+ ms", replies[1])

        await registry.set_command(bot_id, "echo", "{{ args_text }}")
        assert registry.status(bot_id) == BotStatus.RUNNING
        assert await connectivity.latest(bot_id).deliver("echo", "hello") == ["hello"]

        await registry.delete(bot_id)
        with pytest.raises(BotNotFoundError):
            registry.status(bot_id)
        assert connectivity.live_sessions(bot_id) == []
