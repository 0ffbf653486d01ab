"""
Startup Tests
Application wiring: sequential update processing and handler registration
"""

from unittest.mock import patch

import pytest
from telegram.ext import CallbackQueryHandler, CommandHandler

from config import Config
from main import StartupManager

FAKE_TOKEN = "123456:TEST-TOKEN"


async def build_manager():
    manager = StartupManager()
    with patch.object(Config, "BOT_TOKEN", FAKE_TOKEN), patch.object(Config, "validate_bot_configuration"):
        assert await manager.create_application()
    return manager


class TestStartupManager:
    @pytest.mark.asyncio
    async def test_updates_are_processed_one_at_a_time(self):
        manager = await build_manager()

        # Older releases report 0 for sequential processing, newer ones 1
        assert manager.application.concurrent_updates <= 1
        assert manager.startup_errors == []

    @pytest.mark.asyncio
    async def test_every_handler_group_registers(self):
        manager = await build_manager()

        assert await manager.register_handlers()

        handlers = [h for group in manager.application.handlers.values() for h in group]
        commands = set()
        for handler in handlers:
            if isinstance(handler, CommandHandler):
                commands.update(handler.commands)
        assert {"start", "wallet", "wallet_partner", "manual_charge", "my_donations"} <= commands

        patterns = [h.pattern.pattern for h in handlers if isinstance(h, CallbackQueryHandler) and h.pattern]
        assert any("pay_with_balance" in p for p in patterns)
        assert any("donate_custom" in p for p in patterns)

    @pytest.mark.asyncio
    async def test_missing_token_is_reported(self):
        manager = StartupManager()

        with patch.object(Config, "validate_bot_configuration", side_effect=ValueError("no token")):
            assert not await manager.create_application()

        assert manager.startup_errors == ["Application: no token"]
