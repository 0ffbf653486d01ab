#!/usr/bin/env python3
"""
Startup - kWh Marketplace Telegram Bot

Deterministic startup sequence:
database -> application -> services -> handlers -> polling
"""

import asyncio
import logging
import sys
from typing import Optional

from telegram.ext import Application

from config import Config
from database import SessionLocal, create_tables, test_connection

logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


class StartupManager:
    """Runs each startup step once and records what failed"""

    def __init__(self):
        self.application: Optional[Application] = None
        self.startup_complete = False
        self.startup_errors = []

    async def initialize_database(self) -> bool:
        try:
            logger.info("🗄️ Initializing database...")
            if not test_connection():
                raise RuntimeError("Database connection test failed")
            if not create_tables():
                raise RuntimeError("Table creation failed")
            logger.info("✅ Database initialization complete")
            return True
        except Exception as e:
            logger.error(f"❌ Database initialization failed: {e}")
            self.startup_errors.append(f"Database: {e}")
            return False

    async def create_application(self) -> bool:
        try:
            logger.info("🤖 Creating Telegram application...")
            Config.validate_bot_configuration()
            # Updates are handled one at a time, so the synchronous SQLAlchemy
            # calls inside handlers never interleave with each other
            self.application = (
                Application.builder()
                .token(Config.BOT_TOKEN)
                .concurrent_updates(False)
                .build()
            )
            logger.info("✅ Telegram application created")
            return True
        except Exception as e:
            logger.error(f"❌ Application creation failed: {e}")
            self.startup_errors.append(f"Application: {e}")
            return False

    async def initialize_services(self) -> bool:
        try:
            from services.notification_service import TelegramNotifier
            from services.service_registry import BOT_DATA_KEY, build_services

            notifier = TelegramNotifier(self.application.bot)
            self.application.bot_data[BOT_DATA_KEY] = build_services(SessionLocal, notifier)
            return True
        except Exception as e:
            logger.error(f"❌ Service initialization failed: {e}")
            self.startup_errors.append(f"Services: {e}")
            return False

    async def register_handlers(self) -> bool:
        logger.info("📋 Registering handlers...")
        from handlers.commands import register_command_handlers
        from handlers.donations import register_donation_handlers
        from handlers.manual_request import register_manual_request_handlers
        from handlers.offer_callbacks import register_offer_handlers
        from handlers.user_rating import register_rating_handlers
        from handlers.wallet import register_wallet_handlers

        handler_groups = [
            ("Commands", register_command_handlers),
            ("Offers", register_offer_handlers),
            ("Ratings", register_rating_handlers),
            ("Donations", register_donation_handlers),
            ("Wallet", register_wallet_handlers),
            ("Manual requests", register_manual_request_handlers),
        ]

        ok = True
        for group_name, register_func in handler_groups:
            try:
                register_func(self.application)
            except Exception as e:
                logger.error(f"❌ {group_name} handlers failed: {e}")
                self.startup_errors.append(f"{group_name} handlers: {e}")
                ok = False
        return ok

    async def start_application(self) -> bool:
        try:
            logger.info("📡 Starting in polling mode...")
            await self.application.initialize()
            await self.application.start()
            await self.application.updater.start_polling()
            self.startup_complete = True
            logger.info("✅ Application started in polling mode")
            return True
        except Exception as e:
            logger.error(f"❌ Application start failed: {e}")
            self.startup_errors.append(f"Application start: {e}")
            return False

    async def startup_sequence(self) -> bool:
        logger.info("🚀 Starting kWh marketplace bot...")
        Config.log_environment_config()

        startup_steps = [
            ("Database", self.initialize_database),
            ("Application", self.create_application),
            ("Services", self.initialize_services),
            ("Handlers", self.register_handlers),
            ("Start", self.start_application),
        ]
        for step_name, step_func in startup_steps:
            logger.info(f"▶️ Executing step: {step_name}")
            if not await step_func():
                logger.error(f"🚨 Step '{step_name}' failed - cannot continue startup")
                return False
        return True

    async def shutdown(self) -> None:
        if not self.application:
            return
        logger.info("🛑 Shutting down...")
        if self.application.updater and self.application.updater.running:
            await self.application.updater.stop()
        if self.application.running:
            await self.application.stop()
        await self.application.shutdown()


async def run() -> int:
    manager = StartupManager()
    if not await manager.startup_sequence():
        for error in manager.startup_errors:
            logger.error(f"   • {error}")
        await manager.shutdown()
        return 1

    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, asyncio.CancelledError):
        pass
    finally:
        await manager.shutdown()
    return 0


if __name__ == "__main__":
    try:
        sys.exit(asyncio.run(run()))
    except KeyboardInterrupt:
        logger.info("👋 Bot stopped")
