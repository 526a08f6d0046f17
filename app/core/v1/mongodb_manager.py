"""MongoDB Manager for handling the database connection and indexes."""

from typing import Any, Dict, List, Optional, Tuple

from pymongo import MongoClient, ASCENDING, DESCENDING
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import PyMongoError

from app.settings.v1.general import SETTINGS
from app.core.v1.exceptions import DatabaseException
from app.core.v1.log_manager import LogManager

IndexSpec = Tuple[List[Tuple[str, int]], Dict[str, Any]]

INDEXES: Dict[str, List[IndexSpec]] = {
    SETTINGS.MONGODB_COLLECTION_CASES: [
        ([("case_number", ASCENDING)], {"unique": True, "name": "case_number_unique"}),
        ([("state", ASCENDING)], {"name": "state_index"}),
        ([("eps", ASCENDING)], {"name": "eps_index"}),
        ([("created_at", DESCENDING)], {"name": "created_at_index"}),
    ],
    SETTINGS.MONGODB_COLLECTION_DOCUMENTS: [
        ([("case_id", ASCENDING), ("sequence", ASCENDING)], {"name": "case_sequence_index"}),
    ],
    SETTINGS.MONGODB_COLLECTION_RULES: [
        ([("rule_id", ASCENDING), ("version", ASCENDING)], {"unique": True, "name": "rule_version_unique"}),
        ([("active", ASCENDING), ("priority", ASCENDING)], {"name": "active_priority_index"}),
    ],
    SETTINGS.MONGODB_COLLECTION_RESULTS: [
        ([("case_id", ASCENDING), ("is_current", ASCENDING)], {"name": "case_current_index"}),
        ([("case_id", ASCENDING), ("evaluated_at", DESCENDING)], {"name": "case_history_index"}),
    ],
    SETTINGS.MONGODB_COLLECTION_EVENTS: [
        ([("case_id", ASCENDING), ("occurred_at", ASCENDING)], {"name": "case_events_index"}),
    ],
}


class MongoDBManager:
    """
    Owns the MongoDB client and database handle shared by the repositories.

    One instance is built by the engine context at startup and passed to
    every collaborator that needs a collection.
    """

    def __init__(self, client: Optional[MongoClient] = None, database_name: Optional[str] = None):
        """
        Initialize MongoDB manager.

        Args:
            client (Optional[MongoClient]): Pre-built client (tests pass a
                mongomock client). Built from SETTINGS.MONGODB_URL when omitted.
            database_name (Optional[str]): Database name, defaults to
                SETTINGS.MONGODB_DATABASE.
        """
        self.logger = LogManager(__name__)
        self.database_name = database_name or SETTINGS.MONGODB_DATABASE

        try:
            self.client: MongoClient = client if client is not None else MongoClient(SETTINGS.MONGODB_URL)
            self.database: Database = self.client[self.database_name]
        except PyMongoError as err:
            self.logger.error(f"MongoDB connection failed: {err}")
            raise DatabaseException(f"MongoDB connection failed: {err}") from err

        self._create_indexes()

        self.logger.info(
            "MongoDB connection established successfully",
            database=self.database_name
        )

    def collection(self, name: str) -> Collection:
        return self.database[name]

    def _create_indexes(self):
        """
        Create the indexes of every engine collection.
        """
        created_count = 0
        for collection_name, specs in INDEXES.items():
            collection = self.database[collection_name]
            for index_spec, options in specs:
                index_name = options.get("name", "unnamed")
                try:
                    collection.create_index(index_spec, **options)
                    created_count += 1
                    self.logger.debug(f"Ensured index: {index_name}", collection=collection_name)
                except PyMongoError as err:
                    if "already exists" in str(err).lower():
                        self.logger.debug(f"Index already exists: {index_name}")
                    else:
                        self.logger.warning(f"Failed to create index {index_name}: {err}")

        self.logger.info("Index creation completed", ensured=created_count)

    def ping(self) -> bool:
        """Check the server answers.

        Returns:
            bool: True when the server answered.

        Raises:
            DatabaseException: If the server is unreachable.
        """
        try:
            self.client.admin.command("ping")
            return True
        except PyMongoError as err:
            self.logger.error(f"MongoDB ping failed: {err}")
            raise DatabaseException(f"MongoDB ping failed: {err}") from err

    def close(self):
        self.client.close()
        self.logger.info("MongoDB connection closed")
