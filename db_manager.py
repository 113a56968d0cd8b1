import logging
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import PyMongoError

from config import DATABASE_NAME, MONGODB_URI
from database.operations import Collections, MongoStore

logger = logging.getLogger(__name__)


class DatabaseManager:
    def __init__(self, uri: str = MONGODB_URI, database_name: str = DATABASE_NAME):
        self.uri = uri
        self.database_name = database_name
        self.client: Optional[AsyncIOMotorClient] = None
        self.db: Optional[AsyncIOMotorDatabase] = None
        self._is_connected = False

    async def connect(self) -> MongoStore:
        """Подключение к базе данных"""
        if not self.uri:
            raise ValueError("MONGODB_URI is not configured")
        try:
            self.client = AsyncIOMotorClient(
                self.uri,
                tz_aware=True,
                connectTimeoutMS=10000,
                socketTimeoutMS=10000,
                serverSelectionTimeoutMS=10000,
                heartbeatFrequencyMS=15000,
            )

            # Проверяем подключение
            await self.client.admin.command('ping')

            self.db = self.client[self.database_name]
            self._is_connected = True
            logger.info(f"Connected to MongoDB database {self.database_name}")

            await self.create_indexes()
        except Exception as e:
            logger.error(f"MongoDB connection failed: {e}")
            raise
        return MongoStore(self.db)

    async def create_indexes(self):
        """Создание необходимых индексов"""
        try:
            # Один просмотр, один голос и одна подписка на пару
            await self.db[Collections.VIEWS].create_index(
                [("videoId", ASCENDING), ("userId", ASCENDING)], unique=True
            )
            await self.db[Collections.VIEWS].create_index([("userId", ASCENDING), ("viewedAt", DESCENDING)])
            await self.db[Collections.VOTES].create_index(
                [("battleId", ASCENDING), ("voterId", ASCENDING)], unique=True
            )
            await self.db[Collections.FOLLOWS].create_index(
                [("followerId", ASCENDING), ("followingId", ASCENDING)], unique=True
            )
            await self.db[Collections.FOLLOWS].create_index([("followingId", ASCENDING), ("createdAt", DESCENDING)])

            # Индексы для лент и очистки батлов
            await self.db[Collections.BATTLES].create_index([("status", ASCENDING), ("createdAt", ASCENDING)])
            await self.db[Collections.BATTLES].create_index([("status", ASCENDING), ("totalVotes", DESCENDING)])
            await self.db[Collections.BATTLES].create_index(
                [("status", ASCENDING), ("category", ASCENDING), ("createdAt", DESCENDING)]
            )
            await self.db[Collections.BATTLES].create_index("player1.userId")
            await self.db[Collections.BATTLES].create_index("player2.userId")

            # Индексы для уведомлений
            await self.db[Collections.NOTIFICATIONS].create_index(
                [("recipientId", ASCENDING), ("createdAt", DESCENDING)]
            )
            await self.db[Collections.NOTIFICATIONS].create_index([("recipientId", ASCENDING), ("read", ASCENDING)])

            logger.info("Indexes created")
        except Exception as e:
            logger.error(f"Error creating indexes: {e}")
            raise

    async def ping(self) -> bool:
        if not self.client:
            return False
        try:
            await self.client.admin.command('ping')
            return True
        except PyMongoError as e:
            logger.warning(f"MongoDB ping failed: {e}")
            return False

    async def close(self):
        """Закрытие подключения к базе данных"""
        if self.client:
            self.client.close()
            self._is_connected = False
            logger.info("MongoDB connection closed")

    @property
    def is_connected(self):
        """Проверка статуса подключения"""
        return self._is_connected
