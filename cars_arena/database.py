"""Document store wiring.

The store is a process-wide collaborator: one client per application, opened
lazily by flask_pymongo with bounded timeouts, health checked through ``ping``
and awaited with exponential backoff before the server starts accepting
requests. Concurrency control is left to the store's per-document atomicity.
"""

import time
from typing import Dict, Optional

from bson import ObjectId
from bson.errors import InvalidId
from flask import current_app
from flask.json.provider import DefaultJSONProvider
from flask_pymongo import PyMongo
from pymongo import DESCENDING
from pymongo.errors import PyMongoError

from cars_arena.errors import InvalidIdentifier

EXTENSION_KEY = "cars_arena.db"


class MongoJSONProvider(DefaultJSONProvider):
    """Render ObjectId values as their hex form so raw documents can be echoed."""

    @staticmethod
    def default(o):
        if isinstance(o, ObjectId):
            return str(o)
        return DefaultJSONProvider.default(o)


def init_database(app, database=None):
    if database is None:
        timeout_ms = int(app.config["MONGO_TIMEOUT_MS"])
        mongo = PyMongo(
            app,
            serverSelectionTimeoutMS=timeout_ms,
            connectTimeoutMS=timeout_ms,
            socketTimeoutMS=timeout_ms,
        )
        database = mongo.db
        if database is None:
            raise RuntimeError("MONGO_URI must name a database, e.g. mongodb://host:27017/cars-arena")

    app.extensions[EXTENSION_KEY] = database
    return database


def get_db():
    return current_app.extensions[EXTENSION_KEY]


def ensure_indexes(database, logger):
    try:
        database.users.create_index("email", unique=True)
        database.orders.create_index("email")
        database.reviews.create_index([("millTime", DESCENDING)])
    except PyMongoError as exc:
        logger.warning("Unable to ensure indexes: %s", exc)


def ping(database) -> bool:
    database.command("ping")
    return True


def wait_for_database(database, attempts: int, backoff: float, logger, sleep=time.sleep):
    """Ping the store until it answers, doubling the delay after each failure."""
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            return ping(database)
        except PyMongoError as exc:
            if attempt == attempts:
                logger.error("Database unreachable after %d attempts: %s", attempts, exc)
                raise
            delay = backoff * (2 ** (attempt - 1))
            logger.warning(
                "Database ping failed (attempt %d/%d), retrying in %.1fs: %s",
                attempt,
                attempts,
                delay,
                exc,
            )
            sleep(delay)


def parse_object_id(value) -> ObjectId:
    if not isinstance(value, str):
        raise InvalidIdentifier()
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise InvalidIdentifier()


def write_result(result) -> Dict[str, object]:
    """Echo a write result using the field names clients already rely on."""
    payload: Dict[str, object] = {"acknowledged": bool(result.acknowledged)}

    inserted_id = getattr(result, "inserted_id", None)
    if inserted_id is not None:
        payload["insertedId"] = inserted_id
        return payload

    if hasattr(result, "deleted_count"):
        payload["deletedCount"] = result.deleted_count
        return payload

    upserted_id: Optional[ObjectId] = getattr(result, "upserted_id", None)
    payload.update(
        {
            "matchedCount": result.matched_count,
            "modifiedCount": result.modified_count,
            "upsertedId": upserted_id,
            "upsertedCount": 1 if upserted_id is not None else 0,
        }
    )
    return payload
