import asyncio
import logging

from aiohttp import web

from config import LOG_LEVEL, PORT
from db_manager import DatabaseManager
from engine import Engine
from healthcheck import create_app
from push import ExpoPushClient

logger = logging.getLogger(__name__)


async def start_healthcheck_server(engine: Engine, db_manager: DatabaseManager) -> web.AppRunner:
    """Запуск healthcheck сервера"""
    runner = web.AppRunner(create_app(engine, db_manager))
    await runner.setup()
    site = web.TCPSite(runner, '0.0.0.0', PORT)
    await site.start()
    logger.info(f"Healthcheck server listening on 0.0.0.0:{PORT}/health")
    return runner


async def main():
    """Основная функция запуска"""
    db_manager = DatabaseManager()
    engine = None
    runner = None
    try:
        store = await db_manager.connect()
        engine = Engine(store, push_client=ExpoPushClient())
        engine.start()
        runner = await start_healthcheck_server(engine, db_manager)

        # Работаем до отмены
        await asyncio.Event().wait()
    finally:
        # Закрываем все соединения
        if runner is not None:
            await runner.cleanup()
        if engine is not None:
            await engine.stop()
        await db_manager.close()


if __name__ == "__main__":
    logging.basicConfig(
        level=LOG_LEVEL,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Shutdown requested")
